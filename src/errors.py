class BillingError(Exception):
    """Base class for every error raised by the billing engine."""


class SaleValidationError(BillingError, ValueError):
    """Input rejected before any state was touched."""


class HouseUnavailableError(BillingError):
    def __init__(self, house_id: str, check_in, check_out):
        self.house_id = house_id
        self.check_in = check_in
        self.check_out = check_out
        super().__init__(
            f"House {house_id} is already booked between {check_in} and {check_out}"
        )


class SaleNotFoundError(BillingError, LookupError):
    pass


class FiscalDocumentNotFoundError(BillingError, LookupError):
    pass


class SaleNotBillableError(BillingError):
    pass


class SequenceAllocationError(BillingError):
    """The counter increment was not committed; no number was allocated."""


class InvalidTransitionError(BillingError):
    def __init__(self, document_id: int, current, target):
        self.document_id = document_id
        self.current = current
        self.target = target
        super().__init__(
            f"Fiscal document {document_id} cannot move from "
            f"{getattr(current, 'value', current)} to {getattr(target, 'value', target)}"
        )


class FiscalGatewayError(BillingError):
    """Transport-level failure talking to the fiscal authority."""
