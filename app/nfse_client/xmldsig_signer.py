"""
Firma XMLDSig para la DPS y los pedidos de evento (NFS-e Nacional)

Perfil fijo exigido por la Sefin Nacional:
- Enveloped signature: <Signature> como último hijo del padre del elemento
  firmado (DPS para infDPS, pedRegEvento para infPedReg)
- Reference URI="#<Id del elemento>"
- CanonicalizationMethod: exc-c14n#WithComments
- SignatureMethod: RSA-SHA256
- Transforms: enveloped-signature + exc-c14n#WithComments
- DigestMethod: SHA-256
- X509Certificate en KeyInfo (base64 sin cabecera ni saltos)

La firma se arma a mano (no hay soporte genérico de XMLDSig): digest del
elemento, SignedInfo, firma RSA de SignedInfo canonicalizado y bloque KeyInfo.
"""
import base64
import copy
import hashlib
import logging
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from .c14n import (
    EXC_C14N_WITH_COMMENTS,
    canonicalize_for_digest,
    canonicalize_signed_info,
    canonicalize_with_algorithm,
)
from .exceptions import SignatureError
from .pkcs12_utils import KeyMaterial

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"

RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
ENVELOPED_SIGNATURE = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

REFERENCE_TRANSFORMS = (ENVELOPED_SIGNATURE, EXC_C14N_WITH_COMMENTS)

_NS = {"ds": DS_NS}


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _parse(xml_bytes: bytes) -> etree._Element:
    parser = etree.XMLParser(remove_blank_text=False, resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(xml_bytes, parser)
    except etree.XMLSyntaxError as e:
        raise SignatureError(f"XML inválido: {e}") from e


def _find_target(root: etree._Element, tag: str) -> Optional[etree._Element]:
    # root.iter incluye al propio root
    return next(root.iter(f"{{*}}{tag}"), None)


def compute_digest(element: etree._Element) -> str:
    """SHA-256 en base64 del exc-c14n (sin comentarios) de `element`"""
    return base64.b64encode(hashlib.sha256(canonicalize_for_digest(element)).digest()).decode("ascii")


def _build_signed_info(signature: etree._Element, reference_uri: str, digest_value: str) -> etree._Element:
    signed_info = etree.SubElement(signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod")).set("Algorithm", EXC_C14N_WITH_COMMENTS)
    etree.SubElement(signed_info, _ds("SignatureMethod")).set("Algorithm", RSA_SHA256)

    reference = etree.SubElement(signed_info, _ds("Reference"))
    reference.set("URI", reference_uri)
    transforms = etree.SubElement(reference, _ds("Transforms"))
    for algorithm in REFERENCE_TRANSFORMS:
        etree.SubElement(transforms, _ds("Transform")).set("Algorithm", algorithm)
    etree.SubElement(reference, _ds("DigestMethod")).set("Algorithm", SHA256)
    etree.SubElement(reference, _ds("DigestValue")).text = digest_value
    return signed_info


def sign_element(
    root: etree._Element,
    key_material: KeyMaterial,
    tag: str,
    id_attribute: str = "Id",
) -> etree._Element:
    """
    Firma el primer elemento `tag` del árbol y agrega <Signature> al padre.

    Args:
        root: Raíz del documento (se modifica en el lugar)
        key_material: Clave y certificado del firmante
        tag: Nombre local del elemento a firmar (infDPS, infPedReg)
        id_attribute: Atributo que lleva el Id referenciado

    Returns:
        El elemento <Signature> insertado

    Raises:
        SignatureError: elemento o Id ausente, elemento sin padre, documento
                        ya firmado, clave no RSA o falla de la primitiva
    """
    target = _find_target(root, tag)
    if target is None:
        raise SignatureError(f"No se encontró el elemento <{tag}> a firmar")

    element_id = target.get(id_attribute)
    if not element_id:
        raise SignatureError(f"Elemento <{tag}> sin atributo {id_attribute}")

    parent = target.getparent()
    if parent is None:
        raise SignatureError(f"Elemento <{tag}> sin padre: no hay dónde insertar la firma")

    if root.find(f".//{_ds('Signature')}") is not None or root.tag == _ds("Signature"):
        raise SignatureError("El documento ya está firmado; reconstruir el árbol antes de firmar")

    private_key = key_material.private_key
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SignatureError("La clave privada debe ser RSA")

    digest_value = compute_digest(target)

    signature = etree.Element(_ds("Signature"), nsmap={None: DS_NS})
    signed_info = _build_signed_info(signature, f"#{element_id}", digest_value)

    try:
        signature_bytes = private_key.sign(
            canonicalize_signed_info(signed_info),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except (ValueError, TypeError) as e:
        raise SignatureError(f"Error al firmar SignedInfo: {e}") from e

    etree.SubElement(signature, _ds("SignatureValue")).text = base64.b64encode(signature_bytes).decode("ascii")

    key_info = etree.SubElement(signature, _ds("KeyInfo"))
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    etree.SubElement(x509_data, _ds("X509Certificate")).text = key_material.certificate_base64()

    parent.append(signature)

    logger.info(f"Documento firmado: Id={element_id}")
    return signature


def sign_xml(
    xml_bytes: bytes,
    key_material: KeyMaterial,
    tag: str,
    id_attribute: str = "Id",
) -> bytes:
    """Parsea, firma y serializa (UTF-8, con declaración XML, sin pretty-print)"""
    root = _parse(xml_bytes)
    sign_element(root, key_material, tag, id_attribute)
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


def _single(signature: etree._Element, path: str, what: str):
    found = signature.xpath(path, namespaces=_NS)
    if not found:
        raise SignatureError(f"No se encontró {what}")
    return found[0]


def _referenced_element(root: etree._Element, reference_uri: str, id_attribute: str) -> etree._Element:
    if not reference_uri.startswith("#"):
        raise SignatureError(f"Reference/@URI debe ser una referencia interna: {reference_uri}")
    matches = root.xpath(f"//*[@{id_attribute}=$ref]", ref=reference_uri[1:])
    if not matches:
        raise SignatureError(f"No se encontró el elemento referenciado por {reference_uri}")
    return matches[0]


def assert_signature_profile(xml_bytes: bytes, id_attribute: str = "Id") -> None:
    """
    Valida estrictamente la forma de la firma.

    Verifica:
    - CanonicalizationMethod/@Algorithm = exc-c14n#WithComments
    - SignatureMethod/@Algorithm = rsa-sha256
    - DigestMethod/@Algorithm = sha256
    - Reference/@URI apunta a #<Id> de un elemento existente
    - Transforms = enveloped-signature + exc-c14n#WithComments, en ese orden
    - Signature es el último hijo del padre del elemento firmado
    - X509Certificate presente y no vacío

    Raises:
        SignatureError: si la firma no cumple el perfil
    """
    root = _parse(xml_bytes)
    signatures = root.xpath("//ds:Signature", namespaces=_NS)
    if not signatures:
        raise SignatureError("No se encontró Signature en el XML")
    if len(signatures) > 1:
        raise SignatureError(f"Se esperaba una sola Signature, hay {len(signatures)}")
    sig = signatures[0]

    expected = (
        ("ds:SignedInfo/ds:CanonicalizationMethod/@Algorithm", "CanonicalizationMethod", EXC_C14N_WITH_COMMENTS),
        ("ds:SignedInfo/ds:SignatureMethod/@Algorithm", "SignatureMethod", RSA_SHA256),
        ("ds:SignedInfo/ds:Reference/ds:DigestMethod/@Algorithm", "DigestMethod", SHA256),
    )
    for path, what, value in expected:
        actual = _single(sig, path, f"{what}/@Algorithm")
        if actual != value:
            raise SignatureError(
                f"{what} inválido.\n"
                f"  Actual: {actual}\n"
                f"  Esperado: {value}"
            )

    transforms = tuple(
        sig.xpath("ds:SignedInfo/ds:Reference/ds:Transforms/ds:Transform/@Algorithm", namespaces=_NS)
    )
    if transforms != REFERENCE_TRANSFORMS:
        raise SignatureError(
            f"Transforms inválidos.\n"
            f"  Actual: {list(transforms)}\n"
            f"  Esperado: {list(REFERENCE_TRANSFORMS)}"
        )

    reference_uri = _single(sig, "ds:SignedInfo/ds:Reference/@URI", "Reference/@URI")
    target = _referenced_element(root, reference_uri, id_attribute)

    parent = target.getparent()
    if parent is None or sig.getparent() is not parent or parent[-1] is not sig:
        raise SignatureError("Signature debe ser el último hijo del padre del elemento firmado")

    certificate = _single(sig, "ds:KeyInfo/ds:X509Data/ds:X509Certificate", "X509Certificate")
    if not (certificate.text or "").strip():
        raise SignatureError("X509Certificate vacío")


def _digest_input(target: etree._Element) -> etree._Element:
    """Aplica enveloped-signature: quita cualquier Signature dentro del elemento"""
    if target.find(f".//{_ds('Signature')}") is None:
        return target
    stripped = copy.deepcopy(target)
    for signature in stripped.findall(f".//{_ds('Signature')}"):
        signature.getparent().remove(signature)
    return stripped


def verify_signed_xml(xml_bytes: bytes, id_attribute: str = "Id") -> bool:
    """
    Verifica digest y firma con el certificado embebido en KeyInfo.

    No valida la cadena de confianza del certificado, solo que la firma
    sería aceptada criptográficamente.

    Returns:
        True si digest y firma son válidos

    Raises:
        SignatureError: con el detalle de la discrepancia
    """
    assert_signature_profile(xml_bytes, id_attribute)

    root = _parse(xml_bytes)
    sig = root.xpath("//ds:Signature", namespaces=_NS)[0]
    signed_info = _single(sig, "ds:SignedInfo", "SignedInfo")
    reference_uri = _single(sig, "ds:SignedInfo/ds:Reference/@URI", "Reference/@URI")
    target = _referenced_element(root, reference_uri, id_attribute)

    # En referencias "#id" los comentarios se descartan antes de canonicalizar
    expected_digest = compute_digest(_digest_input(target))
    actual_digest = (_single(sig, "ds:SignedInfo/ds:Reference/ds:DigestValue", "DigestValue").text or "").strip()
    if actual_digest != expected_digest:
        raise SignatureError(
            f"DigestValue no coincide.\n"
            f"  En la firma: {actual_digest}\n"
            f"  Calculado: {expected_digest}"
        )

    c14n_algorithm = _single(sig, "ds:SignedInfo/ds:CanonicalizationMethod/@Algorithm", "CanonicalizationMethod")
    signature_value = _single(sig, "ds:SignatureValue", "SignatureValue").text or ""
    certificate_b64 = _single(sig, "ds:KeyInfo/ds:X509Data/ds:X509Certificate", "X509Certificate").text or ""

    try:
        certificate = x509.load_der_x509_certificate(base64.b64decode("".join(certificate_b64.split())))
        certificate.public_key().verify(
            base64.b64decode("".join(signature_value.split())),
            canonicalize_with_algorithm(signed_info, c14n_algorithm),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except InvalidSignature as e:
        raise SignatureError("SignatureValue inválido para el certificado embebido") from e
    except ValueError as e:
        raise SignatureError(f"Certificado o firma ilegibles: {e}") from e

    logger.debug(f"Firma verificada: {reference_uri}")
    return True
