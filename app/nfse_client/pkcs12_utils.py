"""
Carga de certificados PKCS#12 (P12/PFX) para firma y mTLS

El PFX es la fuente de verdad. Se prueban estrategias en orden:

1. CryptographyPkcs12Strategy: `cryptography` (pkcs12.load_key_and_certificates).
2. OpenSslLegacyStrategy: binario `openssl pkcs12 -legacy -nodes`.

NOTA: Fallback a OpenSSL con -legacy
-------------------------------------
Los certificados A1 emitidos por varias AC brasileñas usan algoritmos legacy
(pbeWithSHA1And3-KeyTripleDES-CBC, RC2-40) que cryptography no abre con OpenSSL 3.x.
En ese caso se invoca `openssl` con `-legacy`. La contraseña se pasa por variable
de entorno (`-passin env:`), nunca por argumento. El PFX y el PEM intermedio viven
en un directorio temporal que se borra al salir, con éxito o con error.

Los PEM para mTLS (temp_pem_files) se crean con permisos 600 y se borran al salir
del context manager. En los logs solo aparecen nombres de archivo, nunca rutas
completas ni contraseñas.
"""
import base64
import logging
import os
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .exceptions import CertificateError

logger = logging.getLogger(__name__)

MIN_RSA_KEY_SIZE = 2048

OPENSSL_PASSWORD_ENV = "NFSE_P12_PASS_TMP"
OPENSSL_TIMEOUT = 30

_KEY_BLOCK_RE = re.compile(
    rb"-----BEGIN (?:RSA )?PRIVATE KEY-----.+?-----END (?:RSA )?PRIVATE KEY-----",
    re.DOTALL,
)
_CERT_BLOCK_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class KeyMaterial:
    """Clave privada + certificado extraídos del PFX"""
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate

    @property
    def certificate_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def private_key_pem(self) -> bytes:
        # Sin cifrar: requests necesita leer la clave para mTLS
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def certificate_base64(self) -> str:
        """
        Certificado en base64 para X509Certificate: el cuerpo del PEM sin
        cabecera, pie ni saltos de línea (equivale al DER en base64).
        """
        return base64.b64encode(
            self.certificate.public_bytes(serialization.Encoding.DER)
        ).decode("ascii")

    @property
    def subject_common_name(self) -> Optional[str]:
        attributes = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not attributes:
            return None
        return str(attributes[0].value)


@dataclass(frozen=True)
class ExtractionOutcome:
    """Resultado de una estrategia: KeyMaterial o motivo del fallo"""
    key_material: Optional[KeyMaterial] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.key_material is not None

    @classmethod
    def success(cls, key_material: KeyMaterial) -> "ExtractionOutcome":
        return cls(key_material=key_material)

    @classmethod
    def failure(cls, reason: str) -> "ExtractionOutcome":
        return cls(reason=reason)


def _key_material_from(private_key, certificate) -> KeyMaterial:
    if private_key is None:
        raise CertificateError("No se pudo extraer la clave privada del archivo PKCS#12")
    if certificate is None:
        raise CertificateError("No se pudo extraer el certificado del archivo PKCS#12")
    return KeyMaterial(private_key=private_key, certificate=certificate)


class CryptographyPkcs12Strategy:
    name = "cryptography"

    def extract(self, data: bytes, password: str) -> ExtractionOutcome:
        password_bytes = password.encode("utf-8") if password else None
        try:
            private_key, certificate, _additional = pkcs12.load_key_and_certificates(
                data, password_bytes
            )
        except ValueError as e:
            # Contraseña incorrecta o algoritmo legacy no soportado: el llamador
            # decide si sigue con otra estrategia
            return ExtractionOutcome.failure(str(e)[:200])
        return ExtractionOutcome.success(_key_material_from(private_key, certificate))


def _find_openssl_binary() -> Optional[str]:
    """
    Encuentra el binario openssl disponible en el sistema.

    Prioridad:
    1) OPENSSL_BIN (env override)
    2) Homebrew OpenSSL (openssl@3/openssl@1.1)
    3) openssl en PATH (shutil.which)
    """
    env_override = os.getenv("OPENSSL_BIN")
    if env_override:
        if os.path.exists(env_override) and os.access(env_override, os.X_OK):
            return env_override
        logger.warning(
            f"OPENSSL_BIN está seteado pero no es ejecutable o no existe: {Path(env_override).name}"
        )

    candidates = [
        "/opt/homebrew/opt/openssl@3/bin/openssl",
        "/opt/homebrew/opt/openssl@1.1/bin/openssl",
        "/usr/local/opt/openssl@3/bin/openssl",
        "/usr/local/opt/openssl@1.1/bin/openssl",
    ]
    for candidate in candidates:
        if os.path.exists(candidate) and os.access(candidate, os.X_OK):
            return candidate

    return shutil.which("openssl")


def _wipe(buffer: bytearray) -> None:
    buffer[:] = bytes(len(buffer))


class OpenSslLegacyStrategy:
    """
    Fallback con el binario openssl.

    Convierte el PFX completo a un único PEM (clave + certificados) y extrae
    los bloques por marcadores. Si el binario no reconoce `-legacy`
    (LibreSSL, OpenSSL 1.x) se reintenta sin esa opción.
    """
    name = "openssl-legacy"

    def __init__(self, openssl_bin: Optional[str] = None):
        self.openssl_bin = openssl_bin

    def _run_pkcs12(self, openssl_bin: str, args: List[str], env: dict) -> subprocess.CompletedProcess:
        result = subprocess.run(
            [openssl_bin, "pkcs12"] + args,
            env=env,
            capture_output=True,
            text=True,
            timeout=OPENSSL_TIMEOUT,
        )
        if result.returncode == 0:
            return result

        err = (result.stderr or result.stdout or "").lower()
        if ("unknown option" in err or "unknown flag" in err) and "legacy" in err:
            logger.debug("openssl no soporta -legacy, reintentando sin la opción")
            return subprocess.run(
                [openssl_bin, "pkcs12"] + [a for a in args if a != "-legacy"],
                env=env,
                capture_output=True,
                text=True,
                timeout=OPENSSL_TIMEOUT,
            )
        return result

    def extract(self, data: bytes, password: str) -> ExtractionOutcome:
        openssl_bin = self.openssl_bin or _find_openssl_binary()
        if not openssl_bin:
            return ExtractionOutcome.failure(
                "No se encontró binario openssl (setear OPENSSL_BIN o instalar openssl)"
            )

        env = os.environ.copy()
        env[OPENSSL_PASSWORD_ENV] = password or ""

        with tempfile.TemporaryDirectory(prefix="nfse_p12_") as work_dir:
            container_path = os.path.join(work_dir, "container.pfx")
            pem_path = os.path.join(work_dir, "container.pem")

            with open(container_path, "wb") as f:
                f.write(data)
            os.chmod(container_path, 0o600)

            args = [
                "-legacy",
                "-in", container_path,
                "-out", pem_path,
                "-nodes",
                "-passin", f"env:{OPENSSL_PASSWORD_ENV}",
            ]
            try:
                result = self._run_pkcs12(openssl_bin, args, env)
            except (OSError, subprocess.SubprocessError) as e:
                return ExtractionOutcome.failure(f"No se pudo ejecutar openssl: {e}")

            if result.returncode != 0:
                error_output = result.stderr or result.stdout or "Sin salida"
                return ExtractionOutcome.failure(f"openssl pkcs12 falló: {error_output[:500]}")

            if not os.path.exists(pem_path):
                return ExtractionOutcome.failure("openssl no generó el archivo PEM")

            pem = bytearray(os.path.getsize(pem_path))
            try:
                with open(pem_path, "rb") as f:
                    f.readinto(pem)
                return self._parse_pem(pem)
            finally:
                _wipe(pem)

    def _parse_pem(self, pem: bytearray) -> ExtractionOutcome:
        key_match = _KEY_BLOCK_RE.search(pem)
        cert_match = _CERT_BLOCK_RE.search(pem)
        if key_match is None:
            raise CertificateError("El PEM generado por openssl no contiene 'PRIVATE KEY'")
        if cert_match is None:
            raise CertificateError("El PEM generado por openssl no contiene 'CERTIFICATE'")

        try:
            private_key = serialization.load_pem_private_key(key_match.group(0), password=None)
            certificate = x509.load_pem_x509_certificate(cert_match.group(0))
        except ValueError as e:
            raise CertificateError(f"PEM generado por openssl ilegible: {e}") from e

        logger.info("Certificado PKCS#12 extraído usando OpenSSL (fallback legacy)")
        return ExtractionOutcome.success(KeyMaterial(private_key=private_key, certificate=certificate))


def default_strategies(openssl_bin: Optional[str] = None) -> List[object]:
    return [CryptographyPkcs12Strategy(), OpenSslLegacyStrategy(openssl_bin)]


def _validity_window(certificate: x509.Certificate) -> Tuple[datetime, datetime]:
    # cryptography >= 42 expone *_utc; las versiones previas devuelven naive en UTC
    if hasattr(certificate, "not_valid_after_utc"):
        return certificate.not_valid_before_utc, certificate.not_valid_after_utc
    return (
        certificate.not_valid_before.replace(tzinfo=timezone.utc),
        certificate.not_valid_after.replace(tzinfo=timezone.utc),
    )


def validate_key_material(key_material: KeyMaterial, now: Optional[datetime] = None) -> KeyMaterial:
    """
    Valida el certificado:
    - Ventana de validez (vencido / aún no válido)
    - Clave privada RSA de al menos 2048 bits

    Raises:
        CertificateError: si alguna validación falla
    """
    now = now or datetime.now(timezone.utc)
    not_valid_before, not_valid_after = _validity_window(key_material.certificate)

    if not_valid_after < now:
        raise CertificateError(f"Certificado expirado. Válido hasta: {not_valid_after}")
    if not_valid_before > now:
        raise CertificateError(f"Certificado aún no válido. Válido desde: {not_valid_before}")

    if not isinstance(key_material.private_key, rsa.RSAPrivateKey):
        raise CertificateError("La clave privada debe ser RSA")
    key_size = key_material.private_key.key_size
    if key_size < MIN_RSA_KEY_SIZE:
        raise CertificateError(
            f"La clave RSA debe ser de al menos {MIN_RSA_KEY_SIZE} bits. Actual: {key_size} bits"
        )
    return key_material


def load_key_material_from_bytes(
    data: bytes,
    password: str,
    strategies: Optional[Sequence] = None,
) -> KeyMaterial:
    """
    Abre un PKCS#12 en memoria probando cada estrategia en orden.

    Args:
        data: Contenido del PFX/P12
        password: Contraseña del contenedor
        strategies: Estrategias a probar (por defecto cryptography y openssl legacy)

    Returns:
        KeyMaterial validado

    Raises:
        CertificateError: contraseña incorrecta (todas las estrategias fallaron),
                          falta clave/certificado, certificado fuera de vigencia o clave no RSA
    """
    if not data:
        raise CertificateError("Contenido PKCS#12 vacío")

    reasons = []
    for strategy in strategies or default_strategies():
        outcome = strategy.extract(data, password)
        if outcome.ok:
            key_material = validate_key_material(outcome.key_material)
            logger.info(
                f"Certificado cargado ({strategy.name}): CN={key_material.subject_common_name}"
            )
            return key_material
        logger.debug(f"Estrategia {strategy.name} falló: {outcome.reason}")
        reasons.append(f"{strategy.name}: {outcome.reason}")

    raise CertificateError(
        "No se pudo abrir el certificado PKCS#12 (contraseña incorrecta o formato no soportado). "
        + "; ".join(reasons)
    )


def load_key_material(
    path: str,
    password: str,
    strategies: Optional[Sequence] = None,
) -> KeyMaterial:
    """Como load_key_material_from_bytes, leyendo el PFX desde disco"""
    if not path:
        raise CertificateError("Falta certificado: setear NFSE_CERT_PATH")

    p12_file = Path(path)
    if not p12_file.exists():
        raise CertificateError(f"Archivo PKCS#12 no encontrado: {p12_file.name}")
    if not p12_file.is_file():
        raise CertificateError(f"La ruta no es un archivo: {p12_file.name}")

    ext = p12_file.suffix.lower()
    if ext not in (".p12", ".pfx"):
        logger.warning(f"Extensión inusual para certificado PKCS#12: {ext}")

    return load_key_material_from_bytes(p12_file.read_bytes(), password, strategies)


def cleanup_pem_files(*paths: str) -> None:
    for path in paths:
        if path and os.path.exists(path):
            try:
                os.unlink(path)
                logger.debug(f"Archivo PEM temporal eliminado: {Path(path).name}")
            except OSError as e:
                logger.warning(f"No se pudo eliminar archivo PEM temporal {Path(path).name}: {e}")


@contextmanager
def temp_pem_files(key_material: KeyMaterial) -> Iterator[Tuple[str, str]]:
    """
    PEM temporales (cert, key) con permisos 600 para clientes HTTP con mTLS.

    Uso:
        with temp_pem_files(key_material) as (cert_path, key_path):
            session.cert = (cert_path, key_path)
    """
    cert_fd, cert_path = tempfile.mkstemp(suffix=".pem", prefix="nfse_cert_")
    key_fd, key_path = tempfile.mkstemp(suffix=".pem", prefix="nfse_key_")
    try:
        with os.fdopen(cert_fd, "wb") as cert_file:
            cert_file.write(key_material.certificate_pem)
        with os.fdopen(key_fd, "wb") as key_file:
            key_file.write(key_material.private_key_pem)
        os.chmod(cert_path, 0o600)
        os.chmod(key_path, 0o600)

        logger.debug(
            f"PEM temporales creados: cert={Path(cert_path).name}, key={Path(key_path).name}"
        )
        yield cert_path, key_path
    finally:
        cleanup_pem_files(cert_path, key_path)
