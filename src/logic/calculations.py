import math
from datetime import datetime
from typing import Mapping, Optional, Union

from src.models.schemas import AdditionalSales, SaleCalculations

# Fixed share of the net contract value paid to the sales team
SALES_COMMISSION_RATE = 0.10

SECONDS_PER_DAY = 24 * 60 * 60


def calculate_nights(check_in: datetime, check_out: datetime) -> int:
    """Whole nights between the two instants, rounding any partial day up."""
    diff_seconds = abs((check_out - check_in).total_seconds())
    return math.ceil(diff_seconds / SECONDS_PER_DAY)


def _sum_additional_sales(
    additional_sales: Optional[Union[AdditionalSales, Mapping[str, float]]],
) -> float:
    if additional_sales is None:
        return 0.0
    if isinstance(additional_sales, AdditionalSales):
        amounts = additional_sales.model_dump()
    else:
        amounts = additional_sales
    return sum(
        amounts.get(name) or 0.0 for name in AdditionalSales.model_fields
    )


def calculate_sale_values(
    check_in: datetime,
    check_out: datetime,
    contract_value: float,
    discount: float = 0.0,
    housekeeper_value: float = 0.0,
    concierge_value: float = 0.0,
    additional_sales: Optional[Union[AdditionalSales, Mapping[str, float]]] = None,
) -> SaleCalculations:
    """
    Derives the financial shape of a rental contract.

    Nothing is clamped: a discount larger than the contract value yields a
    negative net value (and a negative commission) so that validation can
    catch it upstream.
    """
    number_of_nights = calculate_nights(check_in, check_out)
    net_value = contract_value - discount
    sales_commission = net_value * SALES_COMMISSION_RATE
    total_additional_sales = _sum_additional_sales(additional_sales)

    total_revenue = net_value + concierge_value + total_additional_sales
    contribution_margin = (
        net_value - sales_commission - housekeeper_value - total_additional_sales
    )

    return SaleCalculations(
        number_of_nights=number_of_nights,
        net_value=net_value,
        sales_commission=sales_commission,
        total_additional_sales=total_additional_sales,
        total_revenue=total_revenue,
        contribution_margin=contribution_margin,
    )
