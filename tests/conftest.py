"""
Pytest configuration y fixtures compartidos para tests NFS-e
"""
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.nfse_client.models import (  # noqa: E402
    Address,
    DeclarationBuilder,
    Environment,
    Party,
    Service,
    TaxRegime,
    Values,
)
from app.nfse_client.pkcs12_utils import KeyMaterial  # noqa: E402

PFX_PASSWORD = "test_password"
PROVIDER_CNPJ = "00000000000100"


def pytest_configure(config):
    """Registra markers personalizados"""
    config.addinivalue_line(
        "markers", "requires_openssl: marca test que requiere el binario openssl"
    )


def make_certificate(
    private_key,
    common_name: str = f"EMPRESA TESTE LTDA:{PROVIDER_CNPJ}",
    not_before: datetime = None,
    not_after: datetime = None,
) -> x509.Certificate:
    """Certificado autofirmado (solo para testing)"""
    now = datetime.now(timezone.utc)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil Teste"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    return x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer
    ).public_key(
        private_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        not_before or now - timedelta(days=1)
    ).not_valid_after(
        not_after or now + timedelta(days=365)
    ).sign(private_key, hashes.SHA256())


def make_pfx(private_key, certificate, password: str = PFX_PASSWORD) -> bytes:
    return pkcs12.serialize_key_and_certificates(
        name=b"test_cert",
        key=private_key,
        cert=certificate,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )


@pytest.fixture(scope="session")
def rsa_key():
    """Clave privada RSA 2048 (una por sesión: generarla es lento)"""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key):
    return make_certificate(rsa_key)


@pytest.fixture(scope="session")
def key_material(rsa_key, certificate):
    return KeyMaterial(private_key=rsa_key, certificate=certificate)


@pytest.fixture
def pfx_bytes(rsa_key, certificate):
    return make_pfx(rsa_key, certificate)


@pytest.fixture
def pfx_file(pfx_bytes, tmp_path):
    """Archivo PFX de prueba: (ruta, contraseña)"""
    pfx_path = tmp_path / "certificado.pfx"
    pfx_path.write_bytes(pfx_bytes)
    return str(pfx_path), PFX_PASSWORD


@pytest.fixture
def provider():
    return Party(
        cnpj="00.000.000/0001-00",
        municipal_registration="12345",
        name="EMPRESA TESTE LTDA",
        address=Address(
            municipality_code="4216909",
            postal_code="88000-000",
            street="Rua das Flores",
            number="100",
            district="Centro",
        ),
        phone="(48) 3333-4444",
        email="fiscal@empresa.com.br",
        tax_regime=TaxRegime(simples_nacional_option=3, special_regime=0),
    )


@pytest.fixture
def client_party():
    return Party(
        cpf="123.456.789-09",
        name="Fulano de Tal",
        trade_name="Fulano ME",
        address=Address(municipality_code="4205407", postal_code="88010000", street="Av. Beira Mar", number="50"),
        email="fulano@example.com",
    )


@pytest.fixture
def declaration_builder(provider):
    """Builder con la DPS mínima de homologación (1000.00 con Simples Nacional 6.00%)"""
    return (
        DeclarationBuilder()
        .environment(Environment.HOMOLOGATION)
        .emitted_at("2026-01-10T10:00:00-03:00")
        .app_version("MiSistema/1.0.0")
        .series("900")
        .number("1")
        .competence_date(date(2026, 1, 10))
        .emission_municipality("4216909")
        .provider(provider)
        .service(Service(tax_code="01.06.01", description="Consultoria em tecnologia"))
        .values(Values(service_value="1000.00", simples_nacional_rate="6.00"))
    )


@pytest.fixture
def declaration(declaration_builder):
    return declaration_builder.build()
