"""
Identificadores de la DPS y de eventos (NFS-e Nacional)

Id DPS (45 caracteres):
    "DPS" + Cód. Mun (7) + Tipo Inscripción (1) + Inscripción Federal (14)
          + Serie (5) + Número (15)

    Tipo Inscripción: 1=CPF, 2=CNPJ. El CPF se completa con ceros a la izquierda.

Id evento (59 caracteres):
    "PRE" + Chave de acceso (50) + últimos 6 dígitos del timestamp
"""
import re
import time
from typing import NamedTuple, Optional, Union

from .exceptions import IdentifierError

DPS_ID_PREFIX = "DPS"
EVENT_ID_PREFIX = "PRE"

MUNICIPALITY_WIDTH = 7
FISCAL_ID_WIDTH = 14
SERIES_WIDTH = 5
NUMBER_WIDTH = 15
EVENT_SUFFIX_WIDTH = 6
ACCESS_KEY_LENGTH = 50

DPS_ID_LENGTH = (
    len(DPS_ID_PREFIX) + MUNICIPALITY_WIDTH + 1 + FISCAL_ID_WIDTH + SERIES_WIDTH + NUMBER_WIDTH
)
EVENT_ID_LENGTH = len(EVENT_ID_PREFIX) + ACCESS_KEY_LENGTH + EVENT_SUFFIX_WIDTH

INSCRIPTION_CPF = "1"
INSCRIPTION_CNPJ = "2"

CPF_LENGTH = 11
CNPJ_LENGTH = 14

_DPS_ID_RE = re.compile(r"^DPS(\d{7})([12])(\d{14})(\d{5})(\d{15})$")


class DpsIdParts(NamedTuple):
    municipality_code: str
    inscription_type: str
    fiscal_id: str
    series: str
    number: str


def only_digits(value: Union[str, int, None]) -> str:
    """Elimina todo lo que no sea dígito ('00.000.000/0001-00' -> '00000000000100')"""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def pad_numeric(value: Union[str, int], width: int, field: str) -> str:
    """
    Rellena con ceros a la izquierda hasta `width`.

    Nunca trunca: si el valor numérico (sin ceros a la izquierda) tiene más
    dígitos que el ancho, falla.

    Raises:
        IdentifierError: valor vacío, sin dígitos o más largo que el ancho
    """
    digits = only_digits(value)
    if not digits:
        raise IdentifierError(f"{field} vacío o sin dígitos: {value!r}")

    significant = digits.lstrip("0") or "0"
    if len(significant) > width:
        raise IdentifierError(
            f"{field} excede el ancho de {width} dígitos: {value!r}"
        )
    return significant.zfill(width)


def inscription_type_for(fiscal_id: Union[str, int]) -> str:
    """1 (CPF) si tiene 11 dígitos, 2 (CNPJ) en cualquier otro caso"""
    return INSCRIPTION_CPF if len(only_digits(fiscal_id)) == CPF_LENGTH else INSCRIPTION_CNPJ


def build_dps_id(
    municipality_code: Union[str, int],
    fiscal_id: Union[str, int],
    series: Union[str, int],
    number: Union[str, int],
    inscription_type: Optional[str] = None,
) -> str:
    """
    Genera el Id de la DPS (atributo infDPS/@Id).

    Args:
        municipality_code: Código IBGE del municipio emisor
        fiscal_id: CNPJ o CPF del prestador (se aceptan separadores)
        series: Serie de la DPS
        number: Número de la DPS
        inscription_type: '1' (CPF) o '2' (CNPJ); si es None se infiere por longitud

    Returns:
        Id de 45 caracteres
    """
    if inscription_type is None:
        inscription_type = inscription_type_for(fiscal_id)
    inscription_type = str(inscription_type)
    if inscription_type not in (INSCRIPTION_CPF, INSCRIPTION_CNPJ):
        raise IdentifierError(f"Tipo de inscripción inválido: {inscription_type!r}")

    dps_id = (
        DPS_ID_PREFIX
        + pad_numeric(municipality_code, MUNICIPALITY_WIDTH, "Código de municipio")
        + inscription_type
        + pad_numeric(fiscal_id, FISCAL_ID_WIDTH, "Inscripción federal")
        + pad_numeric(series, SERIES_WIDTH, "Serie")
        + pad_numeric(number, NUMBER_WIDTH, "Número DPS")
    )

    if len(dps_id) != DPS_ID_LENGTH:
        raise IdentifierError(f"Id DPS con longitud inválida ({len(dps_id)}): {dps_id!r}")
    return dps_id


def parse_dps_id(dps_id: str) -> DpsIdParts:
    """Descompone un Id DPS en sus componentes (con el relleno intacto)"""
    match = _DPS_ID_RE.match(dps_id or "")
    if not match:
        raise IdentifierError(f"Id DPS inválido: {dps_id!r}")
    return DpsIdParts(*match.groups())


def validate_access_key(access_key: str) -> str:
    key = (access_key or "").strip()
    if len(key) != ACCESS_KEY_LENGTH:
        raise IdentifierError(
            f"Chave de acceso debe tener {ACCESS_KEY_LENGTH} caracteres (tiene {len(key)})"
        )
    return key


def build_event_id(access_key: str, timestamp: Optional[int] = None) -> str:
    """
    Genera el Id del pedido de registro de evento (infPedReg/@Id).

    Cada intento usa un timestamp nuevo; no reutilizar un Id entre intentos.
    """
    key = validate_access_key(access_key)
    if timestamp is None:
        timestamp = int(time.time())
    suffix = str(int(timestamp))[-EVENT_SUFFIX_WIDTH:].zfill(EVENT_SUFFIX_WIDTH)
    return EVENT_ID_PREFIX + key + suffix
