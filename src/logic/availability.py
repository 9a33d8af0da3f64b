from datetime import datetime
from typing import Iterable, Optional

from src.models.schemas import Sale, SaleStatus


def periods_conflict(
    check_in: datetime,
    check_out: datetime,
    existing_check_in: datetime,
    existing_check_out: datetime,
) -> bool:
    """
    A stay conflicts with a booked one when it starts inside it, ends inside
    it, or swallows it entirely. Abutting stays (one ending exactly when the
    other starts) do not conflict.
    """
    starts_inside = existing_check_in <= check_in < existing_check_out
    ends_inside = existing_check_in < check_out <= existing_check_out
    contains = check_in <= existing_check_in and check_out >= existing_check_out
    return starts_inside or ends_inside or contains


def is_house_available(
    house_id: str,
    check_in: datetime,
    check_out: datetime,
    existing_sales: Iterable[Sale],
    exclude_sale_id: Optional[int] = None,
) -> bool:
    """Returns False if any non-cancelled booking of the house overlaps the stay."""
    for sale in existing_sales:
        if exclude_sale_id is not None and sale.id == exclude_sale_id:
            continue
        if sale.house_id != house_id:
            continue
        if sale.status == SaleStatus.CANCELLED:
            continue
        if periods_conflict(check_in, check_out, sale.check_in, sale.check_out):
            return False
    return True
