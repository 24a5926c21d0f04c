"""
Canonicalización XML exclusiva (exc-c14n) para la firma de la DPS

- Digest del elemento firmado: exc-c14n SIN comentarios.
- SignedInfo: exc-c14n WithComments (es el algoritmo declarado en
  CanonicalizationMethod).

lxml serializa cada elemento como subárbol de documento, así que un mismo
elemento sin mutaciones produce siempre los mismos bytes.
"""
from lxml import etree

from .exceptions import SignatureError

EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
EXC_C14N_WITH_COMMENTS = "http://www.w3.org/2001/10/xml-exc-c14n#WithComments"
C14N = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
C14N_WITH_COMMENTS = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315#WithComments"

# algoritmo -> (exclusive, with_comments)
_ALGORITHMS = {
    EXC_C14N: (True, False),
    EXC_C14N_WITH_COMMENTS: (True, True),
    C14N: (False, False),
    C14N_WITH_COMMENTS: (False, True),
}


def canonicalize(element: etree._Element, with_comments: bool = False) -> bytes:
    """exc-c14n del subárbol `element`"""
    return etree.tostring(
        element,
        method="c14n",
        exclusive=True,
        with_comments=with_comments,
    )


def canonicalize_for_digest(element: etree._Element) -> bytes:
    return canonicalize(element, with_comments=False)


def canonicalize_signed_info(element: etree._Element) -> bytes:
    return canonicalize(element, with_comments=True)


def canonicalize_with_algorithm(element: etree._Element, algorithm_uri: str) -> bytes:
    """
    Canonicaliza según la URI declarada en un CanonicalizationMethod/Transform.

    Raises:
        SignatureError: si el algoritmo no está soportado
    """
    try:
        exclusive, with_comments = _ALGORITHMS[algorithm_uri]
    except KeyError:
        raise SignatureError(f"Algoritmo de canonicalización no soportado: {algorithm_uri}")
    return etree.tostring(
        element,
        method="c14n",
        exclusive=exclusive,
        with_comments=with_comments,
    )
