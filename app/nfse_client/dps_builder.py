"""
Generador de XML de la DPS (Declaração de Prestação de Serviço)

Estructura según DPS_v1.00.xsd del Sistema Nacional de NFS-e:

    <DPS xmlns="http://www.sped.fazenda.gov.br/nfse" versao="1.00">
        <infDPS Id="DPS...">
            tpAmb, dhEmi, verAplic, serie, nDPS, dCompet, tpEmit, cLocEmi,
            prest, toma?, interm?, serv, valores, xInfComp?
        </infDPS>
    </DPS>

IMPORTANTE:
- El orden de los elementos es obligatorio (el XSD usa xs:sequence).
- Cuando el prestador es el emitente (tpEmit=1), prest NO lleva xNome ni end,
  aunque vengan informados.
- totTrib lleva pTotTribSN o vTotTrib, nunca ambos.
- Sin pretty-print: cualquier whitespace extra cambia el digest de la firma.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from lxml import etree

from .exceptions import ConfigurationError
from .identifiers import build_dps_id, only_digits
from .models import (
    DEFAULT_TAX_DEFAULTS,
    Address,
    Declaration,
    EmitterType,
    Party,
    TaxDefaults,
    TaxRegime,
    validate_declaration,
)

logger = logging.getLogger(__name__)

NFSE_NS = "http://www.sped.fazenda.gov.br/nfse"
NFSE_VERSION = "1.00"

_CENTS = Decimal("0.01")


def _q(tag: str) -> str:
    return f"{{{NFSE_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, text=None) -> etree._Element:
    element = etree.SubElement(parent, _q(tag))
    if text is not None:
        element.text = str(text)
    return element


def format_amount(value: Decimal) -> str:
    """2 decimales con punto, sin separador de miles ni dependencia de locale"""
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidOperation(f"monto no finito: {amount}")
        # quantize excede la precisión del contexto (28 dígitos) para montos enormes
        return f"{amount.quantize(_CENTS, rounding=ROUND_HALF_UP):f}"
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ConfigurationError(f"Monto fuera de rango o inválido: {value!r}") from e


def _is_positive(value: Optional[Decimal]) -> bool:
    return value is not None and value > 0


def _address_element(parent: etree._Element, address: Address) -> etree._Element:
    # cMun y CEP van dentro de endNac; el resto como hermanos de endNac
    end = _sub(parent, "end")
    end_nac = _sub(end, "endNac")
    if address.municipality_code:
        _sub(end_nac, "cMun", address.municipality_code)
    if address.postal_code:
        _sub(end_nac, "CEP", only_digits(address.postal_code))

    if address.street:
        _sub(end, "xLgr", address.street)
    if address.number:
        _sub(end, "nro", address.number)
    if address.complement:
        _sub(end, "xCpl", address.complement)
    if address.district:
        _sub(end, "xBairro", address.district)
    return end


def _tax_regime_element(
    parent: etree._Element, regime: Optional[TaxRegime], defaults: TaxDefaults
) -> etree._Element:
    regime = regime or TaxRegime()
    reg_trib = _sub(parent, "regTrib")

    op_simp_nac = regime.simples_nacional_option
    if op_simp_nac is None:
        op_simp_nac = defaults.simples_nacional_option
    _sub(reg_trib, "opSimpNac", op_simp_nac)

    if regime.apportionment_regime is not None:
        _sub(reg_trib, "regApTribSN", regime.apportionment_regime)

    special = regime.special_regime
    if special is None:
        special = defaults.special_regime
    _sub(reg_trib, "regEspTrib", special)
    return reg_trib


def _party_element(
    parent: etree._Element,
    tag: str,
    party: Party,
    *,
    is_provider: bool,
    provider_is_emitter: bool,
    defaults: TaxDefaults,
) -> etree._Element:
    element = _sub(parent, tag)
    _sub(element, party.fiscal_id_tag, party.fiscal_id)

    if party.municipal_registration:
        _sub(element, "IM", party.municipal_registration)

    suppressed = is_provider and provider_is_emitter

    if party.name and not suppressed:
        _sub(element, "xNome", party.name)

    if party.trade_name and not is_provider:
        _sub(element, "xFant", party.trade_name)

    if party.address is not None and not suppressed:
        _address_element(element, party.address)

    if party.phone:
        _sub(element, "fone", only_digits(party.phone))

    if party.email:
        _sub(element, "email", party.email)

    if is_provider:
        _tax_regime_element(element, party.tax_regime, defaults)

    return element


def _service_element(parent: etree._Element, declaration: Declaration) -> etree._Element:
    service = declaration.service
    serv = _sub(parent, "serv")

    if service.rendering_location:
        loc_prest = _sub(serv, "locPrest")
        _sub(loc_prest, "cLocPrestacao", service.rendering_location)

    c_serv = _sub(serv, "cServ")
    _sub(c_serv, "cTribNac", service.normalized_tax_code)
    _sub(c_serv, "xDescServ", service.description)

    if service.complementary_info:
        info_compl = _sub(serv, "infoCompl")
        _sub(info_compl, "xInfComp", service.complementary_info)

    return serv


def _values_element(
    parent: etree._Element, declaration: Declaration, defaults: TaxDefaults
) -> etree._Element:
    values = declaration.values
    valores = _sub(parent, "valores")

    v_serv_prest = _sub(valores, "vServPrest")
    _sub(v_serv_prest, "vServ", format_amount(values.service_value))
    if _is_positive(values.unconditional_discount):
        _sub(v_serv_prest, "vDescIncond", format_amount(values.unconditional_discount))
    if _is_positive(values.conditional_discount):
        _sub(v_serv_prest, "vDescCond", format_amount(values.conditional_discount))

    trib = _sub(valores, "trib")

    trib_mun = _sub(trib, "tribMun")
    treatment = values.issqn_treatment
    if treatment is None:
        treatment = defaults.issqn_treatment
    withholding = values.issqn_withholding
    if withholding is None:
        withholding = defaults.issqn_withholding
    _sub(trib_mun, "tribISSQN", treatment)
    _sub(trib_mun, "tpRetISSQN", withholding)

    trib_fed = _sub(trib, "tribFed")
    piscofins = _sub(trib_fed, "piscofins")
    _sub(piscofins, "CST", values.pis_cofins_cst or defaults.pis_cofins_cst)

    tot_trib = _sub(trib, "totTrib")
    if values.uses_simples_nacional_rate:
        _sub(tot_trib, "pTotTribSN", format_amount(values.simples_nacional_rate))
    else:
        v_tot_trib = _sub(tot_trib, "vTotTrib")
        _sub(v_tot_trib, "vTotTribFed", format_amount(values.federal_tax_total or 0))
        _sub(v_tot_trib, "vTotTribEst", format_amount(values.state_tax_total or 0))
        _sub(v_tot_trib, "vTotTribMun", format_amount(values.issqn_value or 0))

    return valores


def dps_id_for(declaration: Declaration) -> str:
    provider = declaration.provider
    return build_dps_id(
        declaration.emission_municipality,
        provider.fiscal_id,
        declaration.series,
        declaration.number,
        inscription_type="2" if provider.cnpj else "1",
    )


def build_dps_element(
    declaration: Declaration, defaults: TaxDefaults = DEFAULT_TAX_DEFAULTS
) -> etree._Element:
    """
    Construye el árbol <DPS> sin firmar.

    Args:
        declaration: Declaración a serializar
        defaults: Códigos tributarios por defecto

    Returns:
        Elemento raíz <DPS>

    Raises:
        ConfigurationError: si faltan campos de cabecera
    """
    validate_declaration(declaration)

    dps = etree.Element(_q("DPS"), nsmap={None: NFSE_NS})
    dps.set("versao", NFSE_VERSION)

    dps_id = dps_id_for(declaration)
    inf_dps = _sub(dps, "infDPS")
    inf_dps.set("Id", dps_id)

    _sub(inf_dps, "tpAmb", int(declaration.environment))
    _sub(inf_dps, "dhEmi", declaration.emitted_at)
    _sub(inf_dps, "verAplic", declaration.app_version)
    _sub(inf_dps, "serie", declaration.series)
    _sub(inf_dps, "nDPS", declaration.number)
    _sub(inf_dps, "dCompet", declaration.competence_date)
    _sub(inf_dps, "tpEmit", int(declaration.emitter_type))
    _sub(inf_dps, "cLocEmi", declaration.emission_municipality)

    provider_is_emitter = declaration.emitter_type == EmitterType.PROVIDER

    _party_element(
        inf_dps, "prest", declaration.provider,
        is_provider=True, provider_is_emitter=provider_is_emitter, defaults=defaults,
    )
    if declaration.client is not None:
        _party_element(
            inf_dps, "toma", declaration.client,
            is_provider=False, provider_is_emitter=provider_is_emitter, defaults=defaults,
        )
    if declaration.intermediary is not None:
        _party_element(
            inf_dps, "interm", declaration.intermediary,
            is_provider=False, provider_is_emitter=provider_is_emitter, defaults=defaults,
        )

    _service_element(inf_dps, declaration)
    _values_element(inf_dps, declaration, defaults)

    if declaration.notes:
        _sub(inf_dps, "xInfComp", declaration.notes)

    logger.debug(f"DPS construida: Id={dps_id}")
    return dps


def serialize(element: etree._Element) -> bytes:
    """UTF-8 con declaración XML y sin pretty-print"""
    return etree.tostring(element, xml_declaration=True, encoding="UTF-8", pretty_print=False)


def build_dps_xml(
    declaration: Declaration, defaults: TaxDefaults = DEFAULT_TAX_DEFAULTS
) -> bytes:
    return serialize(build_dps_element(declaration, defaults))
