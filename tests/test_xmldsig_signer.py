"""
Tests para firma XMLDSig de la DPS
"""
import base64
import hashlib

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from lxml import etree

from app.nfse_client.c14n import EXC_C14N_WITH_COMMENTS
from app.nfse_client.dps_builder import NFSE_NS, build_dps_element, build_dps_xml
from app.nfse_client.exceptions import SignatureError
from app.nfse_client.pkcs12_utils import KeyMaterial
from app.nfse_client.xmldsig_signer import (
    DS_NS,
    ENVELOPED_SIGNATURE,
    RSA_SHA256,
    SHA256,
    assert_signature_profile,
    sign_element,
    sign_xml,
    verify_signed_xml,
)

NS = {"ds": DS_NS, "n": NFSE_NS}


@pytest.fixture
def signed_xml(declaration, key_material):
    return sign_xml(build_dps_xml(declaration), key_material, "infDPS")


def test_signature_is_last_child_of_dps(signed_xml):
    root = etree.fromstring(signed_xml)

    assert root[-1].tag == f"{{{DS_NS}}}Signature"
    assert [etree.QName(c).localname for c in root] == ["infDPS", "Signature"]


def test_signature_uses_default_namespace(signed_xml):
    assert b'<Signature xmlns="http://www.w3.org/2000/09/xmldsig#">' in signed_xml
    assert b"ds:" not in signed_xml


def test_signed_info_profile(signed_xml):
    root = etree.fromstring(signed_xml)
    signed_info = root.find("ds:Signature/ds:SignedInfo", NS)

    assert signed_info.find("ds:CanonicalizationMethod", NS).get("Algorithm") == EXC_C14N_WITH_COMMENTS
    assert signed_info.find("ds:SignatureMethod", NS).get("Algorithm") == RSA_SHA256

    reference = signed_info.find("ds:Reference", NS)
    assert reference.get("URI") == "#DPS421690920000000000010000900000000000000001"
    assert [t.get("Algorithm") for t in reference.findall("ds:Transforms/ds:Transform", NS)] == [
        ENVELOPED_SIGNATURE,
        EXC_C14N_WITH_COMMENTS,
    ]
    assert reference.find("ds:DigestMethod", NS).get("Algorithm") == SHA256


def test_digest_value_matches_recomputed(signed_xml):
    """Recalcula el digest del infDPS reparseado y lo compara con DigestValue"""
    root = etree.fromstring(signed_xml)
    inf_dps = root.find("n:infDPS", NS)
    c14n = etree.tostring(inf_dps, method="c14n", exclusive=True, with_comments=False)
    expected = base64.b64encode(hashlib.sha256(c14n).digest()).decode()

    assert root.findtext("ds:Signature/ds:SignedInfo/ds:Reference/ds:DigestValue", namespaces=NS) == expected


def test_signature_value_verifies_with_public_key(signed_xml, certificate):
    root = etree.fromstring(signed_xml)
    signed_info = root.find("ds:Signature/ds:SignedInfo", NS)
    signature_value = base64.b64decode(root.findtext("ds:Signature/ds:SignatureValue", namespaces=NS))

    certificate.public_key().verify(
        signature_value,
        etree.tostring(signed_info, method="c14n", exclusive=True, with_comments=True),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )


def test_x509_certificate_without_pem_armor(signed_xml, key_material):
    value = etree.fromstring(signed_xml).findtext(
        "ds:Signature/ds:KeyInfo/ds:X509Data/ds:X509Certificate", namespaces=NS
    )

    assert value == key_material.certificate_base64()
    assert "BEGIN" not in value
    assert "\n" not in value


def test_verify_signed_xml(signed_xml):
    assert verify_signed_xml(signed_xml) is True
    assert_signature_profile(signed_xml)


def test_verify_detects_tampered_content(signed_xml):
    tampered = signed_xml.replace(b"<vServ>1000.00</vServ>", b"<vServ>9000.00</vServ>")
    assert tampered != signed_xml

    with pytest.raises(SignatureError, match="DigestValue"):
        verify_signed_xml(tampered)


def test_verify_detects_tampered_signature_value(signed_xml):
    root = etree.fromstring(signed_xml)
    node = root.find("ds:Signature/ds:SignatureValue", NS)
    raw = bytearray(base64.b64decode(node.text))
    raw[0] ^= 0xFF
    node.text = base64.b64encode(bytes(raw)).decode()

    with pytest.raises(SignatureError, match="SignatureValue"):
        verify_signed_xml(etree.tostring(root))


def test_profile_rejects_other_signature_method(signed_xml):
    altered = signed_xml.replace(b"#rsa-sha256", b"#rsa-sha512")

    with pytest.raises(SignatureError, match="SignatureMethod"):
        assert_signature_profile(altered)


def test_profile_requires_signature(declaration):
    with pytest.raises(SignatureError, match="No se encontró Signature"):
        assert_signature_profile(build_dps_xml(declaration))


def test_comments_do_not_change_digest(declaration, key_material):
    plain = build_dps_element(declaration)
    commented = build_dps_element(declaration)
    commented.find("n:infDPS", NS).insert(0, etree.Comment(" gerado por MiSistema "))

    sign_element(plain, key_material, "infDPS")
    sign_element(commented, key_material, "infDPS")

    digest_path = "ds:Signature/ds:SignedInfo/ds:Reference/ds:DigestValue"
    assert plain.findtext(digest_path, namespaces=NS) == commented.findtext(digest_path, namespaces=NS)
    assert verify_signed_xml(etree.tostring(commented)) is True


def test_signing_is_deterministic(declaration, key_material):
    """RSA PKCS#1 v1.5 es determinístico: mismo árbol, misma firma"""
    first = sign_xml(build_dps_xml(declaration), key_material, "infDPS")
    second = sign_xml(build_dps_xml(declaration), key_material, "infDPS")
    assert first == second


def test_already_signed_document_rejected(declaration, key_material):
    root = build_dps_element(declaration)
    sign_element(root, key_material, "infDPS")

    with pytest.raises(SignatureError, match="ya está firmado"):
        sign_element(root, key_material, "infDPS")


def test_missing_element(declaration, key_material):
    with pytest.raises(SignatureError, match="infPedReg"):
        sign_element(build_dps_element(declaration), key_material, "infPedReg")


def test_missing_id(key_material):
    root = etree.fromstring(b'<DPS xmlns="http://www.sped.fazenda.gov.br/nfse"><infDPS/></DPS>')

    with pytest.raises(SignatureError, match="sin atributo Id"):
        sign_element(root, key_material, "infDPS")


def test_element_without_parent(key_material):
    root = etree.fromstring(b'<infDPS xmlns="http://www.sped.fazenda.gov.br/nfse" Id="DPS1"/>')

    with pytest.raises(SignatureError, match="sin padre"):
        sign_element(root, key_material, "infDPS")


def test_non_rsa_key_rejected(declaration, certificate):
    ec_material = KeyMaterial(private_key=ec.generate_private_key(ec.SECP256R1()), certificate=certificate)

    with pytest.raises(SignatureError, match="RSA"):
        sign_element(build_dps_element(declaration), ec_material, "infDPS")


def test_invalid_xml(key_material):
    with pytest.raises(SignatureError, match="XML inválido"):
        sign_xml(b"<DPS><infDPS>", key_material, "infDPS")
