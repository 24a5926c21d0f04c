"""
Modelo de datos de la DPS (Declaração de Prestação de Serviço)

Registros inmutables por grupo de negocio (prestador, tomador, intermediario,
servicio, valores) y un builder que valida los campos obligatorios antes de
producir la Declaration. Nada de esto toca XML: la serialización está en
dps_builder.py.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import List, Optional, Union
from zoneinfo import ZoneInfo

from .exceptions import ConfigurationError
from .identifiers import CNPJ_LENGTH, CPF_LENGTH, only_digits

BRAZIL_TZ = ZoneInfo("America/Sao_Paulo")

# Margen contra desfase de reloj con la Sefin (dhEmi no puede quedar en el futuro)
EMISSION_CLOCK_SKEW = timedelta(seconds=10)

Amount = Union[Decimal, str, int, float]


class Environment(IntEnum):
    PRODUCTION = 1
    HOMOLOGATION = 2


class EmitterType(IntEnum):
    PROVIDER = 1
    CLIENT = 2
    INTERMEDIARY = 3


def to_decimal(value: Optional[Amount], field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            # str() evita arrastrar el error binario de los float (0.1 -> 0.1000000000000000055)
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ConfigurationError(f"Monto inválido en {field_name}: {value!r}") from e
    # NaN/Infinity llegarían al XML firmado o romperían las comparaciones
    if not amount.is_finite():
        raise ConfigurationError(f"Monto inválido en {field_name}: {value!r}")
    return amount


def now_brasilia() -> str:
    """dhEmi por defecto: ahora en America/Sao_Paulo menos el margen de reloj"""
    moment = datetime.now(BRAZIL_TZ) - EMISSION_CLOCK_SKEW
    return moment.replace(microsecond=0).isoformat()


def _format_timestamp(value: Union[str, datetime]) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=BRAZIL_TZ)
        return value.replace(microsecond=0).isoformat()
    return str(value)


def _format_date(value: Union[str, date]) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class Address:
    municipality_code: Optional[str] = None
    postal_code: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    complement: Optional[str] = None
    district: Optional[str] = None


@dataclass(frozen=True)
class TaxRegime:
    """regTrib del prestador. None = usar TaxDefaults"""
    simples_nacional_option: Optional[int] = None
    apportionment_regime: Optional[int] = None
    special_regime: Optional[int] = None


@dataclass(frozen=True)
class TaxDefaults:
    """
    Códigos tributarios por defecto, explícitos y sobreescribibles por llamada.

    - issqn_treatment (tribISSQN): 1=Tributable, 2=Inmune, 3=Exportación, 4=No incidencia
    - issqn_withholding (tpRetISSQN): 1=No retenido, 2=Retenido por tomador, 3=Por intermediario
    - pis_cofins_cst (CST PIS/COFINS): "00"
    - simples_nacional_option (opSimpNac): 1=No optante, 2=MEI, 3=ME/EPP
    - special_regime (regEspTrib): 0=Ninguno
    """
    issqn_treatment: int = 1
    issqn_withholding: int = 1
    pis_cofins_cst: str = "00"
    simples_nacional_option: int = 1
    special_regime: int = 0


DEFAULT_TAX_DEFAULTS = TaxDefaults()


@dataclass(frozen=True)
class Party:
    """
    Prestador / tomador / intermediario.

    CNPJ (14 dígitos) o CPF (11 dígitos), nunca ambos. Se aceptan con
    separadores; se guardan solo los dígitos.
    """
    cnpj: Optional[str] = None
    cpf: Optional[str] = None
    municipal_registration: Optional[str] = None
    name: Optional[str] = None
    trade_name: Optional[str] = None
    address: Optional[Address] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    tax_regime: Optional[TaxRegime] = None

    def __post_init__(self):
        cnpj = only_digits(self.cnpj) or None
        cpf = only_digits(self.cpf) or None

        if cnpj and cpf:
            raise ConfigurationError("Informar CNPJ o CPF, no ambos")
        if not cnpj and not cpf:
            raise ConfigurationError("CNPJ o CPF obligatorio")
        if cnpj and len(cnpj) != CNPJ_LENGTH:
            raise ConfigurationError(f"CNPJ debe tener {CNPJ_LENGTH} dígitos: {self.cnpj!r}")
        if cpf and len(cpf) != CPF_LENGTH:
            raise ConfigurationError(f"CPF debe tener {CPF_LENGTH} dígitos: {self.cpf!r}")

        object.__setattr__(self, "cnpj", cnpj)
        object.__setattr__(self, "cpf", cpf)

    @property
    def fiscal_id(self) -> str:
        return self.cnpj or self.cpf

    @property
    def fiscal_id_tag(self) -> str:
        return "CNPJ" if self.cnpj else "CPF"


@dataclass(frozen=True)
class Service:
    tax_code: str
    description: str
    rendering_location: Optional[str] = None
    complementary_info: Optional[str] = None

    @property
    def normalized_tax_code(self) -> str:
        """cTribNac sin puntos, guiones ni espacios ('01.06.01' -> '010601')"""
        return re.sub(r"[.\-\s]", "", self.tax_code)


@dataclass(frozen=True)
class Values:
    service_value: Amount
    unconditional_discount: Optional[Amount] = None
    conditional_discount: Optional[Amount] = None
    issqn_treatment: Optional[int] = None
    issqn_withholding: Optional[int] = None
    pis_cofins_cst: Optional[str] = None
    simples_nacional_rate: Optional[Amount] = None
    federal_tax_total: Optional[Amount] = None
    state_tax_total: Optional[Amount] = None
    issqn_value: Optional[Amount] = None

    def __post_init__(self):
        for name in (
            "service_value",
            "unconditional_discount",
            "conditional_discount",
            "simples_nacional_rate",
            "federal_tax_total",
            "state_tax_total",
            "issqn_value",
        ):
            object.__setattr__(self, name, to_decimal(getattr(self, name), name))
        if self.service_value is None:
            raise ConfigurationError("vServ (service_value) es obligatorio")

    @property
    def uses_simples_nacional_rate(self) -> bool:
        return self.simples_nacional_rate is not None and self.simples_nacional_rate > 0


@dataclass(frozen=True)
class Declaration:
    environment: Environment
    emitted_at: str
    app_version: str
    series: str
    number: str
    competence_date: str
    emitter_type: EmitterType
    emission_municipality: str
    provider: Party
    service: Service
    values: Values
    client: Optional[Party] = None
    intermediary: Optional[Party] = None
    notes: Optional[str] = None


REQUIRED_FIELDS = (
    "environment",
    "emitted_at",
    "app_version",
    "series",
    "number",
    "competence_date",
    "emitter_type",
    "emission_municipality",
    "provider",
    "service",
    "values",
)


def missing_required_fields(data: dict) -> List[str]:
    missing = []
    for name in REQUIRED_FIELDS:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def _raise_if_missing(data: dict) -> None:
    missing = missing_required_fields(data)
    if missing:
        raise ConfigurationError(
            "Campos obligatorios no informados: " + ", ".join(missing)
        )


def validate_declaration(declaration: Declaration) -> Declaration:
    """
    Raises:
        ConfigurationError: si falta algún campo obligatorio
    """
    _raise_if_missing({name: getattr(declaration, name, None) for name in REQUIRED_FIELDS})
    return declaration


@dataclass
class DeclarationBuilder:
    """
    Acumula los campos de la DPS y produce una Declaration validada.

    Uso:
        declaration = (
            DeclarationBuilder()
            .environment(Environment.HOMOLOGATION)
            .app_version("MiSistema/1.0.0")
            .series("900")
            .number("1")
            .competence_date(date(2026, 1, 10))
            .emission_municipality("4216909")
            .provider(Party(cnpj="00.000.000/0001-00"))
            .service(Service(tax_code="01.06.01", description="Consultoría"))
            .values(Values(service_value="1000.00", simples_nacional_rate="6.00"))
            .build()
        )
    """
    _fields: dict = field(default_factory=dict)

    def _set(self, name: str, value) -> "DeclarationBuilder":
        self._fields[name] = value
        return self

    def environment(self, value: Union[Environment, int]) -> "DeclarationBuilder":
        return self._set("environment", Environment(int(value)))

    def emitted_at(self, value: Union[str, datetime]) -> "DeclarationBuilder":
        return self._set("emitted_at", _format_timestamp(value))

    def app_version(self, value: str) -> "DeclarationBuilder":
        return self._set("app_version", value)

    def series(self, value: Union[str, int]) -> "DeclarationBuilder":
        return self._set("series", str(value))

    def number(self, value: Union[str, int]) -> "DeclarationBuilder":
        return self._set("number", str(value))

    def competence_date(self, value: Union[str, date]) -> "DeclarationBuilder":
        return self._set("competence_date", _format_date(value))

    def emitter_type(self, value: Union[EmitterType, int]) -> "DeclarationBuilder":
        return self._set("emitter_type", EmitterType(int(value)))

    def emission_municipality(self, value: Union[str, int]) -> "DeclarationBuilder":
        return self._set("emission_municipality", str(value))

    def provider(self, value: Party) -> "DeclarationBuilder":
        return self._set("provider", value)

    def client(self, value: Optional[Party]) -> "DeclarationBuilder":
        return self._set("client", value)

    def intermediary(self, value: Optional[Party]) -> "DeclarationBuilder":
        return self._set("intermediary", value)

    def service(self, value: Service) -> "DeclarationBuilder":
        return self._set("service", value)

    def values(self, value: Values) -> "DeclarationBuilder":
        return self._set("values", value)

    def notes(self, value: Optional[str]) -> "DeclarationBuilder":
        return self._set("notes", value)

    def build(self) -> Declaration:
        data = dict(self._fields)
        data.setdefault("emitted_at", now_brasilia())
        data.setdefault("emitter_type", EmitterType.PROVIDER)

        _raise_if_missing(data)

        names = {f.name for f in fields(Declaration)}
        return Declaration(**{k: v for k, v in data.items() if k in names})
