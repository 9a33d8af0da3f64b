import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from src.db.database import (
    get_sale,
    insert_sale,
    list_sales,
    next_sequence_number,
    update_sale_row,
    update_sale_status,
)
from src.errors import HouseUnavailableError, SaleNotFoundError, SaleValidationError
from src.logic.availability import is_house_available
from src.logic.calculations import calculate_sale_values
from src.models.schemas import Sale, SaleInput, SaleStatus

logger = logging.getLogger(__name__)

# Sale codes share the allocator used for fiscal numbering
SALE_CODE_ISSUER = "sales"
SALE_CODE_PREFIX = "VND"


def format_sale_code(number: int) -> str:
    return f"{SALE_CODE_PREFIX}{number:03d}"


def _validate_input(data: Union[SaleInput, Dict[str, Any]]) -> SaleInput:
    if isinstance(data, SaleInput):
        return data
    try:
        return SaleInput(**data)
    except ValidationError as e:
        raise SaleValidationError(str(e)) from e


def project_sale(
    data: SaleInput,
    code: str,
    sale_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> Sale:
    """
    Builds the stored sale from its base fields. Derived values only ever
    come from here, so they cannot drift from the inputs.
    """
    calculations = calculate_sale_values(
        data.check_in,
        data.check_out,
        data.contract_value,
        discount=data.discount,
        housekeeper_value=data.housekeeper_value,
        concierge_value=data.concierge_value,
        additional_sales=data.additional_sales,
    )
    now = datetime.now()
    return Sale(
        **data.model_dump(),
        **calculations.model_dump(),
        id=sale_id,
        code=code,
        created_at=created_at or now,
        updated_at=now,
    )


def check_house_availability(
    conn: sqlite3.Connection,
    house_id: str,
    check_in: datetime,
    check_out: datetime,
    exclude_sale_id: Optional[int] = None,
) -> bool:
    existing = list_sales(conn, house_id=house_id, exclude_cancelled=True)
    return is_house_available(
        house_id, check_in, check_out, existing, exclude_sale_id=exclude_sale_id
    )


def _ensure_available(
    conn: sqlite3.Connection, data: SaleInput, exclude_sale_id: Optional[int] = None
):
    if data.status == SaleStatus.CANCELLED:
        return
    if not check_house_availability(
        conn, data.house_id, data.check_in, data.check_out, exclude_sale_id
    ):
        raise HouseUnavailableError(data.house_id, data.check_in, data.check_out)


def create_sale(
    conn: sqlite3.Connection, data: Union[SaleInput, Dict[str, Any]]
) -> Sale:
    """Validates, checks the house calendar, numbers and stores a new sale."""
    sale_input = _validate_input(data)
    _ensure_available(conn, sale_input)

    number = next_sequence_number(conn, SALE_CODE_ISSUER, SALE_CODE_PREFIX)
    sale = project_sale(sale_input, code=format_sale_code(number))
    sale.id = insert_sale(conn, sale)

    logger.info("Sale %s created for house %s", sale.code, sale.house_id)
    return sale


def update_sale(conn: sqlite3.Connection, sale_id: int, **changes) -> Sale:
    """
    Applies base-field changes to a sale and recomputes every derived field.
    Status changes go through set_sale_status.
    """
    if "status" in changes:
        raise SaleValidationError("Use set_sale_status to change the sale status")

    existing = get_sale(conn, sale_id)
    if existing is None:
        raise SaleNotFoundError(f"Sale {sale_id} not found")

    merged = existing.model_dump(include=set(SaleInput.model_fields))
    merged.update(changes)
    sale_input = _validate_input(merged)
    _ensure_available(conn, sale_input, exclude_sale_id=sale_id)

    sale = project_sale(
        sale_input, code=existing.code, sale_id=sale_id, created_at=existing.created_at
    )
    update_sale_row(conn, sale)
    return sale


def set_sale_status(
    conn: sqlite3.Connection, sale_id: int, status: Union[SaleStatus, str]
) -> Sale:
    """Moves a sale to another status without touching its financial fields."""
    try:
        status = SaleStatus(status)
    except ValueError as e:
        raise SaleValidationError(f"Unknown sale status: {status}") from e

    existing = get_sale(conn, sale_id)
    if existing is None:
        raise SaleNotFoundError(f"Sale {sale_id} not found")

    # Reviving a cancelled booking must not double-book the house
    if existing.status == SaleStatus.CANCELLED and status != SaleStatus.CANCELLED:
        if not check_house_availability(
            conn, existing.house_id, existing.check_in, existing.check_out, sale_id
        ):
            raise HouseUnavailableError(
                existing.house_id, existing.check_in, existing.check_out
            )

    update_sale_status(conn, sale_id, status)
    logger.info(
        "Sale %s moved from %s to %s",
        existing.code,
        existing.status.value,
        status.value,
    )
    return get_sale(conn, sale_id)
