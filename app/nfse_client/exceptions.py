"""
Excepciones del cliente NFS-e Nacional

Jerarquía:
- NfseClientError
  - ConfigurationError: campos de negocio faltantes o inválidos (corregir datos)
    - IdentifierError: componente de Id fuera de ancho o con formato inválido
  - CertificateError: PFX ilegible, contraseña incorrecta, falta clave/certificado
  - SignatureError: elemento firmable ausente o falla de la primitiva de firma
  - EnvelopeError: falla de compresión/descompresión o base64 del sobre
  - TransportError: respuesta HTTP con error (status + body)
"""
from typing import Optional


class NfseClientError(Exception):
    """Excepción base del cliente NFS-e"""
    pass


class ConfigurationError(NfseClientError):
    """Campos obligatorios faltantes o inválidos antes de construir la DPS"""
    pass


class IdentifierError(ConfigurationError):
    """Componente de un identificador (Id DPS / Id evento) inválido"""
    pass


class CertificateError(NfseClientError):
    """Error al cargar el certificado PKCS#12 (PFX/P12)"""
    pass


class SignatureError(NfseClientError):
    """Error al firmar el XML (XMLDSig)"""
    pass


class EnvelopeError(NfseClientError):
    """Error al empaquetar o desempaquetar el XML (gzip + base64)"""
    pass


class TransportError(NfseClientError):
    """Falla de transporte con status HTTP y cuerpo de respuesta"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
