"""
Tests para canonicalización exc-c14n
"""
import pytest
from lxml import etree

from app.nfse_client.c14n import (
    EXC_C14N,
    EXC_C14N_WITH_COMMENTS,
    canonicalize,
    canonicalize_for_digest,
    canonicalize_signed_info,
    canonicalize_with_algorithm,
)
from app.nfse_client.exceptions import SignatureError

SAMPLE = (
    b'<DPS xmlns="http://www.sped.fazenda.gov.br/nfse" xmlns:x="urn:unused" versao="1.00">'
    b'<infDPS Id="DPS1"><!-- nota --><tpAmb>2</tpAmb><vazio/></infDPS>'
    b'</DPS>'
)


@pytest.fixture
def inf_dps():
    return etree.fromstring(SAMPLE)[0]


def test_digest_form_drops_comments(inf_dps):
    assert canonicalize_for_digest(inf_dps) == (
        b'<infDPS xmlns="http://www.sped.fazenda.gov.br/nfse" Id="DPS1">'
        b'<tpAmb>2</tpAmb><vazio></vazio></infDPS>'
    )


def test_signed_info_form_keeps_comments(inf_dps):
    assert b"<!-- nota -->" in canonicalize_signed_info(inf_dps)


def test_exclusive_omits_unused_namespaces(inf_dps):
    assert b"urn:unused" not in canonicalize(inf_dps)


def test_deterministic(inf_dps):
    assert canonicalize(inf_dps) == canonicalize(inf_dps)
    assert canonicalize(inf_dps, with_comments=True) == canonicalize(inf_dps, with_comments=True)


def test_with_algorithm_matches_helpers(inf_dps):
    assert canonicalize_with_algorithm(inf_dps, EXC_C14N) == canonicalize_for_digest(inf_dps)
    assert canonicalize_with_algorithm(inf_dps, EXC_C14N_WITH_COMMENTS) == canonicalize_signed_info(inf_dps)


def test_unknown_algorithm(inf_dps):
    with pytest.raises(SignatureError, match="no soportado"):
        canonicalize_with_algorithm(inf_dps, "http://example.com/c14n")
