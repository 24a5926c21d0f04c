"""
Orquestación: Declaration / cancelamiento -> XML firmado -> sobre JSON

Cada llamada reconstruye el árbol desde cero; un árbol firmado nunca se
vuelve a firmar.
"""
import logging
from typing import Dict, NamedTuple, Optional, Union

from .dps_builder import NFSE_NS, build_dps_element, dps_id_for, serialize
from .envelope import build_dps_envelope, build_event_envelope
from .event_builder import CancellationReason, author_from_certificate, build_cancellation_event
from .exceptions import CertificateError
from .models import DEFAULT_TAX_DEFAULTS, Declaration, Environment, TaxDefaults
from .pkcs12_utils import KeyMaterial
from .xmldsig_signer import sign_element

logger = logging.getLogger(__name__)

DPS_SIGNED_TAG = "infDPS"
EVENT_SIGNED_TAG = "infPedReg"


class Submission(NamedTuple):
    document_id: str
    signed_xml: bytes
    payload: Dict[str, str]


def sign_declaration(
    declaration: Declaration,
    key_material: KeyMaterial,
    defaults: TaxDefaults = DEFAULT_TAX_DEFAULTS,
) -> bytes:
    """Construye y firma la DPS; devuelve el XML firmado en UTF-8"""
    root = build_dps_element(declaration, defaults)
    sign_element(root, key_material, DPS_SIGNED_TAG)
    return serialize(root)


def prepare_dps_submission(
    declaration: Declaration,
    key_material: KeyMaterial,
    defaults: TaxDefaults = DEFAULT_TAX_DEFAULTS,
) -> Submission:
    signed_xml = sign_declaration(declaration, key_material, defaults)
    document_id = dps_id_for(declaration)
    logger.info(f"DPS lista para envío: Id={document_id} ({len(signed_xml)} bytes)")
    return Submission(document_id, signed_xml, build_dps_envelope(signed_xml))


def prepare_cancellation(
    access_key: str,
    reason: str,
    reason_code: Union[CancellationReason, int],
    key_material: KeyMaterial,
    environment: Union[Environment, int],
    app_version: str,
    author_fiscal_id: Optional[str] = None,
) -> Submission:
    """
    Arma, firma y empaqueta el pedido de cancelamiento.

    El autor se toma del CN del certificado salvo que se informe
    `author_fiscal_id`.

    Raises:
        CertificateError: el CN no contiene CNPJ/CPF y no se informó el autor
    """
    if author_fiscal_id is None:
        author = author_from_certificate(key_material.certificate)
        if author is None:
            raise CertificateError(
                "El CN del certificado no contiene CNPJ ni CPF; informar author_fiscal_id"
            )
        author_fiscal_id = author[1]

    root = build_cancellation_event(
        access_key,
        reason,
        reason_code,
        environment=environment,
        app_version=app_version,
        author_fiscal_id=author_fiscal_id,
    )
    sign_element(root, key_material, EVENT_SIGNED_TAG)
    event_id = root.find(f"{{{NFSE_NS}}}{EVENT_SIGNED_TAG}").get("Id")

    signed_xml = serialize(root)
    logger.info(f"Pedido de cancelamiento listo para envío: Id={event_id}")
    return Submission(event_id, signed_xml, build_event_envelope(signed_xml))
