"""
Pedido de registro de evento: cancelamiento de NFS-e (e101101)

    <pedRegEvento xmlns="http://www.sped.fazenda.gov.br/nfse" versao="1.00">
        <infPedReg Id="PRE...">
            tpAmb, verAplic, dhEvento, CNPJAutor|CPFAutor, chNFSe,
            <e101101> xDesc, cMotivo, xMotivo </e101101>
        </infPedReg>
    </pedRegEvento>

El autor (prestador que cancela) sale del CN del certificado de firma, que en
los certificados ICP-Brasil tiene la forma "RAZON SOCIAL:CNPJ".
"""
import logging
import re
from datetime import datetime
from enum import IntEnum
from typing import Optional, Tuple, Union

from cryptography import x509
from cryptography.x509.oid import NameOID
from lxml import etree

from .dps_builder import NFSE_NS, NFSE_VERSION
from .exceptions import ConfigurationError
from .identifiers import CNPJ_LENGTH, CPF_LENGTH, build_event_id, only_digits
from .models import BRAZIL_TZ, Environment

logger = logging.getLogger(__name__)

CANCELLATION_EVENT = "e101101"
CANCELLATION_DESCRIPTION = "Cancelamento de NFS-e"
MAX_REASON_LENGTH = 255

_FISCAL_ID_IN_CN_RE = re.compile(r"(\d{14}|\d{11})")


class CancellationReason(IntEnum):
    EMISSION_ERROR = 1
    SERVICE_NOT_RENDERED = 2
    OTHER = 9


def _q(tag: str) -> str:
    return f"{{{NFSE_NS}}}{tag}"


def author_from_certificate(certificate: x509.Certificate) -> Optional[Tuple[str, str]]:
    """
    Busca CNPJ (14 dígitos) o CPF (11 dígitos) en el CN del sujeto.

    Returns:
        ("CNPJAutor", cnpj) / ("CPFAutor", cpf), o None si el CN no lo contiene
    """
    attributes = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return None
    match = _FISCAL_ID_IN_CN_RE.search(str(attributes[0].value))
    if not match:
        return None
    return author_tag_for(match.group(1))


def author_tag_for(fiscal_id: str) -> Tuple[str, str]:
    digits = only_digits(fiscal_id)
    if len(digits) == CNPJ_LENGTH:
        return "CNPJAutor", digits
    if len(digits) == CPF_LENGTH:
        return "CPFAutor", digits
    raise ConfigurationError(f"Documento del autor inválido (se esperan 11 o 14 dígitos): {fiscal_id!r}")


def build_cancellation_event(
    access_key: str,
    reason: str,
    reason_code: Union[CancellationReason, int],
    *,
    environment: Union[Environment, int],
    app_version: str,
    author_fiscal_id: str,
    timestamp: Optional[int] = None,
    event_time: Optional[datetime] = None,
) -> etree._Element:
    """
    Construye el árbol <pedRegEvento> sin firmar.

    Args:
        access_key: Chave de acceso de la NFS-e (50 caracteres)
        reason: Descripción del motivo (se trunca a 255 caracteres)
        reason_code: 1, 2 o 9
        environment: Ambiente (tpAmb)
        app_version: verAplic
        author_fiscal_id: CNPJ o CPF del autor del evento
        timestamp: Epoch para el sufijo del Id (por defecto, ahora)
        event_time: dhEvento (por defecto, ahora en America/Sao_Paulo)

    Raises:
        ConfigurationError: motivo, código o autor inválidos
        IdentifierError: chave de acceso con longitud distinta de 50
    """
    try:
        code = CancellationReason(int(reason_code))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Código de motivo inválido (1, 2 o 9): {reason_code!r}") from e

    if not reason or not reason.strip():
        raise ConfigurationError("Motivo de cancelamiento obligatorio")
    if not app_version:
        raise ConfigurationError("verAplic obligatorio")

    author_tag, author_id = author_tag_for(author_fiscal_id)
    event_id = build_event_id(access_key, timestamp)

    moment = event_time or datetime.now(BRAZIL_TZ)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=BRAZIL_TZ)

    root = etree.Element(_q("pedRegEvento"), nsmap={None: NFSE_NS})
    root.set("versao", NFSE_VERSION)

    inf_ped_reg = etree.SubElement(root, _q("infPedReg"))
    inf_ped_reg.set("Id", event_id)

    etree.SubElement(inf_ped_reg, _q("tpAmb")).text = str(int(environment))
    etree.SubElement(inf_ped_reg, _q("verAplic")).text = app_version
    etree.SubElement(inf_ped_reg, _q("dhEvento")).text = moment.replace(microsecond=0).isoformat()
    etree.SubElement(inf_ped_reg, _q(author_tag)).text = author_id
    etree.SubElement(inf_ped_reg, _q("chNFSe")).text = access_key.strip()

    event = etree.SubElement(inf_ped_reg, _q(CANCELLATION_EVENT))
    etree.SubElement(event, _q("xDesc")).text = CANCELLATION_DESCRIPTION
    etree.SubElement(event, _q("cMotivo")).text = str(int(code))
    etree.SubElement(event, _q("xMotivo")).text = reason.strip()[:MAX_REASON_LENGTH]

    logger.debug(f"Evento de cancelamiento construido: Id={event_id}")
    return root
