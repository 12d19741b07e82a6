"""Consumption tax calculation.

Pure functions: nothing here touches the database. Amounts are Decimals and
tax is rounded half-up to the currency's minor unit (whole yen for JPY).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from app.models.billing import TaxCategory
from app.services.common import minor_unit, round_currency

logger = logging.getLogger(__name__)

JAPAN_STANDARD_RATE = Decimal("0.10")
JAPAN_REDUCED_RATE = Decimal("0.08")

_REGION_ALIASES = {
    "jp": "JP",
    "japan": "JP",
    "us": "US",
    "usa": "US",
}

_CURRENCY_SYMBOLS = {"JPY": "¥", "USD": "$", "EUR": "€"}


@dataclass(frozen=True)
class TaxProfile:
    exempt: bool = False
    use_reduced_rate: bool = False


@dataclass
class TaxCalculation:
    taxable_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    tax_region: str
    exempt_amount: Decimal | None = None


@dataclass
class LineTax:
    amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    category: TaxCategory


@dataclass
class InvoiceTax:
    total_taxable_amount: Decimal
    total_exempt_amount: Decimal
    total_tax_amount: Decimal
    effective_tax_rate: Decimal
    tax_region: str
    items: list[LineTax] = field(default_factory=list)


def normalize_region(region: str | None) -> str | None:
    """Return the canonical region code or None when unsupported."""
    return _REGION_ALIASES.get((region or "JP").strip().lower())


def profile_from_settings(settings: dict | None) -> TaxProfile:
    """Build a profile from an organization's ``settings["tax"]`` block."""
    tax = (settings or {}).get("tax") or {}
    return TaxProfile(
        exempt=bool(tax.get("exempt", False)),
        use_reduced_rate=bool(tax.get("use_reduced_rate", False)),
    )


def _resolve_region(region: str | None) -> str:
    resolved = normalize_region(region)
    if resolved is None:
        logger.warning("Unsupported tax region %s, applying Japan consumption tax", region)
        return "JP"
    return resolved


def calculate_tax(
    amount: Decimal,
    region: str | None = "JP",
    profile: TaxProfile | None = None,
    currency: str = "JPY",
) -> TaxCalculation:
    amount = Decimal(str(amount))
    profile = profile or TaxProfile()
    resolved = _resolve_region(region)
    if resolved == "US":
        # No US sales tax engine; callers get a zero-rated result.
        return TaxCalculation(
            taxable_amount=amount,
            tax_amount=round_currency(0, currency),
            tax_rate=Decimal("0"),
            tax_region="US",
        )
    if profile.exempt:
        return TaxCalculation(
            taxable_amount=amount,
            tax_amount=round_currency(0, currency),
            tax_rate=Decimal("0"),
            tax_region="JP",
            exempt_amount=amount,
        )
    rate = JAPAN_REDUCED_RATE if profile.use_reduced_rate else JAPAN_STANDARD_RATE
    return TaxCalculation(
        taxable_amount=amount,
        tax_amount=round_currency(amount * rate, currency),
        tax_rate=rate,
        tax_region="JP",
    )


def _rate_for_category(region: str, category: TaxCategory) -> Decimal:
    if region != "JP" or category == TaxCategory.exempt:
        return Decimal("0")
    if category == TaxCategory.reduced:
        return JAPAN_REDUCED_RATE
    return JAPAN_STANDARD_RATE


def default_category(profile: TaxProfile | None) -> TaxCategory:
    profile = profile or TaxProfile()
    if profile.exempt:
        return TaxCategory.exempt
    if profile.use_reduced_rate:
        return TaxCategory.reduced
    return TaxCategory.standard


def calculate_invoice_tax(
    items: list[tuple[Decimal, TaxCategory | None]],
    region: str | None = "JP",
    profile: TaxProfile | None = None,
    currency: str = "JPY",
) -> InvoiceTax:
    """Tax per line item, aggregated.

    ``items`` is a list of ``(amount, category)``; a missing category falls
    back to the profile default.
    """
    resolved = _resolve_region(region)
    fallback = default_category(profile)
    zero = round_currency(0, currency)
    total_taxable = Decimal("0")
    total_exempt = Decimal("0")
    total_tax = zero
    rows: list[LineTax] = []
    for amount, category in items:
        amount = Decimal(str(amount))
        category = category or fallback
        rate = _rate_for_category(resolved, category)
        if category == TaxCategory.exempt:
            total_exempt += amount
            rows.append(LineTax(amount, Decimal("0"), zero, Decimal("0"), category))
            continue
        tax_amount = round_currency(amount * rate, currency)
        total_taxable += amount
        total_tax += tax_amount
        rows.append(LineTax(amount, amount, tax_amount, rate, category))
    effective = Decimal("0")
    if total_taxable > 0:
        effective = (total_tax / total_taxable).quantize(Decimal("0.0001"))
    return InvoiceTax(
        total_taxable_amount=total_taxable,
        total_exempt_amount=total_exempt,
        total_tax_amount=total_tax,
        effective_tax_rate=effective,
        tax_region=resolved,
        items=rows,
    )


def validate_tax_calculation(calculation: TaxCalculation, currency: str = "JPY") -> bool:
    """Re-derive the tax and flag drift beyond one minor unit."""
    if calculation.taxable_amount < 0 or calculation.tax_amount < 0:
        return False
    if calculation.tax_rate < 0 or calculation.tax_rate > 1:
        return False
    expected = round_currency(calculation.taxable_amount * calculation.tax_rate, currency)
    difference = abs(Decimal(str(calculation.tax_amount)) - expected)
    if difference > minor_unit(currency):
        logger.warning(
            "Tax calculation discrepancy: calculated=%s expected=%s difference=%s",
            calculation.tax_amount,
            expected,
            difference,
        )
        return False
    return True


def get_tax_rates(region: str | None = "JP") -> dict:
    resolved = normalize_region(region)
    if resolved == "JP":
        return {
            "region": "JP",
            "standard": JAPAN_STANDARD_RATE,
            "reduced": JAPAN_REDUCED_RATE,
            "exempt": Decimal("0"),
            "description": {
                "standard": "Consumption tax, applied to most goods and services",
                "reduced": "Reduced rate, applied to food and newspapers",
                "exempt": "Tax exempt, applied to certain educational services",
            },
        }
    return {
        "region": region,
        "standard": Decimal("0"),
        "reduced": Decimal("0"),
        "exempt": Decimal("0"),
        "description": {
            "standard": "Standard tax rate not defined for this region",
            "reduced": "Reduced tax rate not defined for this region",
            "exempt": "Tax exempt",
        },
    }


def format_tax_amount(amount: Decimal, currency: str = "JPY") -> str:
    code = (currency or "").upper()
    value = round_currency(amount, code)
    symbol = _CURRENCY_SYMBOLS.get(code)
    if minor_unit(code) == Decimal("1"):
        text = f"{value:,.0f}"
    else:
        text = f"{value:,.2f}"
    if symbol:
        return f"{symbol}{text}"
    return f"{text} {code}"


def get_tax_breakdown(
    subtotal: Decimal, calculation: TaxCalculation, currency: str = "JPY"
) -> dict:
    total = Decimal(str(subtotal)) + calculation.tax_amount
    breakdown = {
        "subtotal": {
            "amount": subtotal,
            "formatted": format_tax_amount(subtotal, currency),
        },
        "tax_amount": {
            "amount": calculation.tax_amount,
            "formatted": format_tax_amount(calculation.tax_amount, currency),
            "rate": f"{calculation.tax_rate * 100:.1f}%",
        },
        "total": {"amount": total, "formatted": format_tax_amount(total, currency)},
    }
    if calculation.exempt_amount:
        breakdown["exempt_amount"] = {
            "amount": calculation.exempt_amount,
            "formatted": format_tax_amount(calculation.exempt_amount, currency),
        }
    return breakdown
