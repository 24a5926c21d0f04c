"""
Cliente HTTP para la API REST de la Sefin Nacional (NFS-e)

Endpoints:
    POST /nfse                          emisión (dpsXmlGZipB64)
    GET  /nfse/{chave}                  consulta de NFS-e (nfseXmlGZipB64)
    GET  /dps/{id}                      consulta por Id de DPS
    POST /nfse/{chave}/eventos          registro de evento (pedRegEventoXmlGZipB64)
    GET  /nfse/{chave}/eventos[/{tipo}] consulta de eventos

list_by_range recorre una serie de números de DPS con GET /dps/{id}.

Autenticación por mTLS con el mismo certificado A1 que firma. requests
necesita cert/key en archivos: se usan PEM temporales (temp_pem_files) que
se borran al cerrar el transporte. Sin reintentos: un 429 o 5xx se
propaga como TransportError.
"""
import json
import logging
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

import requests
from requests import Session
from requests.adapters import HTTPAdapter

from .config import NfseConfig
from .emission import prepare_cancellation, prepare_dps_submission
from .envelope import extract_document
from .event_builder import CancellationReason
from .exceptions import NfseClientError, TransportError
from .identifiers import build_dps_id, validate_access_key
from .models import DEFAULT_TAX_DEFAULTS, Declaration, Environment, TaxDefaults
from .pkcs12_utils import KeyMaterial, temp_pem_files

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"

Timeout = Union[float, Tuple[float, float]]


class Transport(Protocol):
    def send(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        content_type: str = JSON_CONTENT_TYPE,
    ) -> bytes:
        ...


class RequestsTransport:
    """
    Transporte sobre requests.Session con mTLS.

    Uso:
        with RequestsTransport(base_url, key_material) as transport:
            transport.send("GET", "/nfse/...")
    """

    def __init__(
        self,
        base_url: str,
        key_material: Optional[KeyMaterial] = None,
        timeout: Timeout = (10, 30),
        ca_bundle_path: Optional[str] = None,
        session: Optional[Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or Session()
        self._pem_files = ExitStack()

        if key_material is not None:
            cert_path, key_path = self._pem_files.enter_context(temp_pem_files(key_material))
            self.session.cert = (cert_path, key_path)
            logger.info(
                f"mTLS configurado con PEM temporales: {Path(cert_path).name}, {Path(key_path).name}"
            )

        self.session.verify = ca_bundle_path or True
        self.session.mount("https://", HTTPAdapter())

    def send(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        content_type: str = JSON_CONTENT_TYPE,
    ) -> bytes:
        url = f"{self.base_url}{path}"
        headers = {"Accept": JSON_CONTENT_TYPE}
        if body is not None:
            headers["Content-Type"] = f"{content_type}; charset=utf-8"

        logger.debug(f"{method} {path}")
        try:
            resp = self.session.request(method, url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Error de conexión en {method} {path}: {e}") from e

        if resp.status_code >= 400:
            raise TransportError(
                f"Error HTTP {resp.status_code} en {method} {path}: {resp.text[:500]}",
                status_code=resp.status_code,
                body=resp.text,
            )
        return resp.content

    def close(self) -> None:
        try:
            self.session.close()
        finally:
            self._pem_files.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def parse_response(content: bytes) -> Dict[str, Any]:
    """JSON -> dict; cuerpo vacío -> {}; cualquier otro formato -> {"raw": texto}"""
    text = content.decode("utf-8", errors="replace") if content else ""
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"raw": text}
    if isinstance(parsed, dict):
        return parsed
    return {"raw": text}


class NfseClient:
    """Operaciones de la API Sefin Nacional sobre un Transport"""

    def __init__(
        self,
        transport: Transport,
        key_material: KeyMaterial,
        environment: Union[Environment, int],
        app_version: str,
        defaults: TaxDefaults = DEFAULT_TAX_DEFAULTS,
    ):
        self.transport = transport
        self.key_material = key_material
        self.environment = Environment(int(environment))
        self.app_version = app_version
        self.defaults = defaults

    @classmethod
    def from_config(cls, config: NfseConfig, key_material: Optional[KeyMaterial] = None) -> "NfseClient":
        """Carga el certificado configurado y arma el transporte mTLS"""
        if key_material is None:
            key_material = config.load_key_material()
        transport = RequestsTransport(config.base_url, key_material, config.timeout)
        return cls(transport, key_material, config.environment, config.app_version, config.tax_defaults)

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        return parse_response(self.transport.send(method, path, body, JSON_CONTENT_TYPE))

    def emit(self, declaration: Declaration) -> Dict[str, Any]:
        """
        Firma la DPS y la envía a la Sefin.

        Returns:
            Respuesta de la API (incluye chaveAcesso y nfseXmlGZipB64 si fue autorizada)

        Raises:
            ConfigurationError, CertificateError, SignatureError: antes del envío
            TransportError: HTTP >= 400 o falla de conexión
        """
        submission = prepare_dps_submission(declaration, self.key_material, self.defaults)
        logger.info(f"Enviando DPS {submission.document_id}")
        return self._request("POST", "/nfse", submission.payload)

    def cancel(
        self,
        access_key: str,
        reason: str,
        reason_code: Union[CancellationReason, int] = CancellationReason.OTHER,
    ) -> Dict[str, Any]:
        submission = prepare_cancellation(
            access_key,
            reason,
            reason_code,
            self.key_material,
            self.environment,
            self.app_version,
        )
        logger.info(f"Enviando pedido de cancelamiento {submission.document_id}")
        return self._request("POST", f"/nfse/{validate_access_key(access_key)}/eventos", submission.payload)

    def get_nfse(self, access_key: str) -> Dict[str, Any]:
        return self._request("GET", f"/nfse/{validate_access_key(access_key)}")

    def get_dps(self, dps_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/dps/{dps_id}")

    def get_events(self, access_key: str, event_type: Optional[str] = None) -> Dict[str, Any]:
        path = f"/nfse/{validate_access_key(access_key)}/eventos"
        if event_type:
            path += f"/{event_type}"
        return self._request("GET", path)

    def list_by_range(
        self,
        municipality_code: str,
        fiscal_id: str,
        series: str,
        start: int,
        end: int,
        include_nfse: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Recorre los números de DPS [start, end] de una serie y devuelve los que
        ya tienen NFS-e (consulta GET /dps/{id} por número).

        Los números sin DPS registrada (404 u otro TransportError) se omiten.
        Con include_nfse=True también consulta cada NFS-e; si esa consulta
        falla el ítem se conserva con la clave "error".

        Returns:
            Lista de dicts con number, dps_id, access_key, dps y, según el
            caso, nfse o error
        """
        found = []
        for number in range(start, end + 1):
            dps_id = build_dps_id(municipality_code, fiscal_id, series, number)
            try:
                dps = self.get_dps(dps_id)
            except TransportError as e:
                logger.debug(f"DPS {dps_id} omitida: {e}")
                continue

            access_key = dps.get("chaveAcesso")
            if not access_key:
                continue
            found.append({"number": number, "dps_id": dps_id, "access_key": access_key, "dps": dps})

        if include_nfse:
            for item in found:
                try:
                    item["nfse"] = self.get_nfse(item["access_key"])
                except TransportError as e:
                    item["error"] = str(e)

        logger.info(f"Serie {series} [{start}-{end}]: {len(found)} NFS-e encontradas")
        return found

    def download_xml(self, access_key: str, destination: Optional[str] = None) -> bytes:
        """
        XML de la NFS-e autorizada (desempaquetado de nfseXmlGZipB64).

        Args:
            access_key: Chave de acceso
            destination: Si se informa, también se guarda en ese archivo
        """
        xml_bytes = extract_document(self.get_nfse(access_key))
        if destination is not None:
            try:
                Path(destination).write_bytes(xml_bytes)
            except OSError as e:
                raise NfseClientError(f"Error al guardar XML en {Path(destination).name}: {e}") from e
        return xml_bytes

    def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
