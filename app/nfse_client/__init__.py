"""
Módulo cliente para integración con el Sistema Nacional de NFS-e
Brasil - Sefin Nacional
"""
from .config import NfseConfig, get_nfse_config
from .dps_builder import build_dps_element, build_dps_xml
from .emission import Submission, prepare_cancellation, prepare_dps_submission, sign_declaration
from .exceptions import (
    CertificateError,
    ConfigurationError,
    EnvelopeError,
    IdentifierError,
    NfseClientError,
    SignatureError,
    TransportError,
)
from .http_client import NfseClient, RequestsTransport
from .models import (
    Address,
    Declaration,
    DeclarationBuilder,
    EmitterType,
    Environment,
    Party,
    Service,
    TaxDefaults,
    TaxRegime,
    Values,
)
from .pkcs12_utils import KeyMaterial, load_key_material, load_key_material_from_bytes
from .xmldsig_signer import sign_element, sign_xml, verify_signed_xml

__all__ = [
    'NfseConfig', 'get_nfse_config',
    'build_dps_element', 'build_dps_xml',
    'Submission', 'prepare_cancellation', 'prepare_dps_submission', 'sign_declaration',
    'CertificateError', 'ConfigurationError', 'EnvelopeError', 'IdentifierError',
    'NfseClientError', 'SignatureError', 'TransportError',
    'NfseClient', 'RequestsTransport',
    'Address', 'Declaration', 'DeclarationBuilder', 'EmitterType', 'Environment',
    'Party', 'Service', 'TaxDefaults', 'TaxRegime', 'Values',
    'KeyMaterial', 'load_key_material', 'load_key_material_from_bytes',
    'sign_element', 'sign_xml', 'verify_signed_xml',
]
