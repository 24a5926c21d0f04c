"""
Sobre de transporte: XML -> gzip -> base64 -> objeto JSON de un solo campo

    POST /nfse                  {"dpsXmlGZipB64": "<base64>"}
    POST /nfse/{chave}/eventos  {"pedRegEventoXmlGZipB64": "<base64>"}

Las respuestas traen la NFS-e autorizada en `nfseXmlGZipB64` con el mismo
formato (extract_document).
"""
import base64
import binascii
import gzip
import zlib
from typing import Dict, Union

from .exceptions import EnvelopeError

DPS_FIELD = "dpsXmlGZipB64"
EVENT_FIELD = "pedRegEventoXmlGZipB64"
NFSE_FIELD = "nfseXmlGZipB64"


def _as_bytes(xml: Union[bytes, str]) -> bytes:
    if isinstance(xml, str):
        return xml.encode("utf-8")
    return xml


def compress_and_encode(xml: Union[bytes, str]) -> str:
    """gzip (mtime=0, salida reproducible) y base64 estándar en ASCII"""
    try:
        compressed = gzip.compress(_as_bytes(xml), mtime=0)
    except (OSError, zlib.error, TypeError) as e:
        raise EnvelopeError(f"Error al comprimir XML: {e}") from e
    return base64.b64encode(compressed).decode("ascii")


def build_dps_envelope(xml: Union[bytes, str]) -> Dict[str, str]:
    return {DPS_FIELD: compress_and_encode(xml)}


def build_event_envelope(xml: Union[bytes, str]) -> Dict[str, str]:
    return {EVENT_FIELD: compress_and_encode(xml)}


def decode_and_decompress(encoded: str) -> bytes:
    """
    Inversa de compress_and_encode.

    Raises:
        EnvelopeError: base64 inválido o contenido que no es gzip
    """
    try:
        compressed = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise EnvelopeError(f"Base64 inválido en el sobre: {e}") from e

    try:
        return gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as e:
        raise EnvelopeError(f"Contenido gzip inválido en el sobre: {e}") from e


def extract_document(payload: dict, field: str = NFSE_FIELD) -> bytes:
    """XML contenido en `payload[field]` (por defecto la NFS-e autorizada)"""
    encoded = (payload or {}).get(field)
    if not encoded:
        raise EnvelopeError(f"Campo {field} ausente en la respuesta")
    return decode_and_decompress(encoded)
