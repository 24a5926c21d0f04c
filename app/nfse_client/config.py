"""
Configuración para cliente NFS-e Nacional
"""
import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .models import Environment, TaxDefaults
from .pkcs12_utils import KeyMaterial, default_strategies, load_key_material

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} debe ser un entero: {raw!r}") from e


class NfseConfig:
    """Configuración del cliente NFS-e por ambiente"""

    ENV_HOMOLOG = "homologacao"
    ENV_PROD = "producao"

    # Sefin Nacional: emisión, consulta y eventos
    SEFIN_URLS = {
        "homologacao": "https://sefin.producaorestrita.nfse.gov.br/SefinNacional",
        "producao": "https://sefin.nfse.gov.br/SefinNacional",
    }

    ENVIRONMENTS = {
        "homologacao": Environment.HOMOLOGATION,
        "producao": Environment.PRODUCTION,
    }

    DEFAULT_APP_VERSION = "nfse-client-1.0.0"

    def __init__(self, env: str = ENV_HOMOLOG):
        """
        Inicializa la configuración NFS-e

        Args:
            env: Ambiente ('homologacao' o 'producao')
        """
        if env not in self.ENVIRONMENTS:
            raise ConfigurationError(
                f"Ambiente inválido: {env}. Debe ser '{self.ENV_HOMOLOG}' o '{self.ENV_PROD}'"
            )

        self.env = env
        self.environment = self.ENVIRONMENTS[env]

        self.base_url = os.getenv("NFSE_SEFIN_BASE_URL", self.SEFIN_URLS[env]).rstrip("/")

        cert_path = os.getenv("NFSE_CERT_PATH")
        self.cert_path = Path(cert_path) if cert_path else None
        self.cert_password = os.getenv("NFSE_CERT_PASSWORD", "")
        self.openssl_bin = os.getenv("OPENSSL_BIN") or None

        self.municipality_code = os.getenv("NFSE_MUNICIPIO_IBGE", "")
        self.app_version = os.getenv("NFSE_VERSAO_APLICATIVO", self.DEFAULT_APP_VERSION)

        # Timeouts (segundos)
        self.request_timeout = _int_env("NFSE_REQUEST_TIMEOUT", 30)
        self.connect_timeout = _int_env("NFSE_CONNECT_TIMEOUT", 10)

        self.tax_defaults = TaxDefaults(
            issqn_treatment=_int_env("NFSE_DEFAULT_TRIB_ISSQN", TaxDefaults.issqn_treatment),
            issqn_withholding=_int_env("NFSE_DEFAULT_TP_RET_ISSQN", TaxDefaults.issqn_withholding),
            pis_cofins_cst=os.getenv("NFSE_DEFAULT_CST", TaxDefaults.pis_cofins_cst),
        )

    @property
    def timeout(self) -> Tuple[int, int]:
        """(connect, read) para requests"""
        return self.connect_timeout, self.request_timeout

    def load_key_material(self) -> KeyMaterial:
        """
        Abre el certificado configurado en NFSE_CERT_PATH

        Raises:
            CertificateError: archivo ausente, contraseña incorrecta o certificado inválido
        """
        return load_key_material(
            str(self.cert_path) if self.cert_path else "",
            self.cert_password,
            default_strategies(self.openssl_bin),
        )


def get_nfse_config(env: Optional[str] = None) -> NfseConfig:
    """
    Obtiene la configuración NFS-e desde variables de entorno

    Args:
        env: Ambiente ('homologacao' o 'producao'). Si None, usa NFSE_ENV

    Returns:
        Configuración NFS-e
    """
    if env is None:
        env = os.getenv("NFSE_ENV", NfseConfig.ENV_HOMOLOG)

    return NfseConfig(env)
