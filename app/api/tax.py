from decimal import Decimal

from fastapi import APIRouter, Query

from app.services import tax as tax_service

router = APIRouter()


@router.get("/tax/rates", tags=["tax"])
def tax_rates(region: str = Query(default="JP")) -> dict:
    return tax_service.get_tax_rates(region)


@router.get("/tax/calculate", tags=["tax"])
def calculate_tax(
    amount: Decimal = Query(ge=0),
    region: str = Query(default="JP"),
    currency: str = Query(default="JPY", min_length=3, max_length=3),
    reduced: bool = False,
    exempt: bool = False,
) -> dict:
    profile = tax_service.TaxProfile(exempt=exempt, use_reduced_rate=reduced)
    calculation = tax_service.calculate_tax(amount, region, profile, currency)
    return {
        "region": calculation.tax_region,
        "rate": calculation.tax_rate,
        "breakdown": tax_service.get_tax_breakdown(amount, calculation, currency),
    }
