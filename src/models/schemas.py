import math
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class SaleStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SaleOrigin(str, Enum):
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    GOOGLE = "google"
    REFERRAL = "indicacao"
    WHATSAPP = "whatsapp"
    SITE = "site"
    OTHER = "outros"


class FiscalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    ERROR = "error"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class SefazEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class StayPeriod(BaseModel):
    check_in: datetime
    check_out: datetime

    @model_validator(mode="after")
    def check_out_after_check_in(self):
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be strictly after check_in")
        return self


class AdditionalSales(BaseModel):
    """Supplier commissions sold alongside the stay (all default to zero)."""

    supermarket: float = Field(0.0, ge=0)
    seafood: float = Field(0.0, ge=0)
    seafood_meat: float = Field(0.0, ge=0)
    transfer: float = Field(0.0, ge=0)
    vegetables: float = Field(0.0, ge=0)
    coconuts: float = Field(0.0, ge=0)


class SaleCalculations(BaseModel):
    number_of_nights: int
    net_value: float
    sales_commission: float
    total_additional_sales: float
    total_revenue: float
    contribution_margin: float


class SaleInput(BaseModel):
    """
    Base fields of a rental contract as typed by the operator.
    Client and house display fields arrive already resolved by the caller.
    """

    company: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_name: str = ""
    client_cpf: str = ""
    client_email: Optional[EmailStr] = None
    client_phone: str = ""
    sale_origin: SaleOrigin = SaleOrigin.OTHER
    house_id: str = Field(..., min_length=1)
    house_name: str = ""
    check_in: datetime
    check_out: datetime
    number_of_guests: int = Field(..., gt=0)
    contract_value: float = Field(..., ge=0)
    discount: float = Field(0.0, ge=0)
    housekeeper_value: float = Field(0.0, ge=0)
    concierge_value: float = Field(0.0, ge=0)
    additional_sales: AdditionalSales = Field(default_factory=AdditionalSales)
    status: SaleStatus = SaleStatus.PENDING

    @model_validator(mode="after")
    def check_stay_period(self):
        StayPeriod(check_in=self.check_in, check_out=self.check_out)
        return self

    @property
    def stay(self) -> StayPeriod:
        return StayPeriod(check_in=self.check_in, check_out=self.check_out)


class Sale(SaleInput, SaleCalculations):
    id: Optional[int] = None
    code: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IssuerConfig(BaseModel):
    issuer: str
    name: str
    tax_id: str = Field(..., description="CNPJ of the issuing company")
    registration_id: str = Field("", description="Inscrição Estadual")
    series: str = "1"
    auto_issue: bool = False
    sefaz_environment: SefazEnvironment = SefazEnvironment.SANDBOX
    tax_rate: float = Field(6.0, ge=0, description="Percent applied to the subtotal")
    certificate_path: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SequenceCounter(BaseModel):
    issuer: str
    series: str
    last_number: int = Field(0, ge=0)
    last_allocated_at: Optional[datetime] = None


class FiscalDocument(BaseModel):
    id: Optional[int] = None
    number: int = Field(..., gt=0)
    series: str
    code: str

    issuer: str
    issuer_name: str
    issuer_tax_id: str

    client_id: str
    client_name: str
    client_tax_id: str = ""
    client_email: Optional[str] = None

    sale_id: int
    sale_code: str
    house_id: str
    house_name: str = ""
    check_in: datetime
    check_out: datetime
    number_of_nights: int

    daily_rate_value: float
    concierge_value: float
    additional_services_value: float
    discount_value: float
    subtotal: float
    tax_rate: float
    tax_value: float
    total_value: float

    issue_date: datetime
    status: FiscalStatus = FiscalStatus.PENDING
    authority_number: Optional[str] = None
    access_key: Optional[str] = None
    xml_content: Optional[str] = None
    pdf_url: Optional[str] = None

    emission_error: Optional[str] = None
    cancellation_reason: Optional[str] = None
    failure_attempts: int = Field(0, ge=0)
    last_attempt_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_totals(self):
        expected_subtotal = (
            self.daily_rate_value
            + self.concierge_value
            + self.additional_services_value
            - self.discount_value
        )
        if not math.isclose(self.subtotal, expected_subtotal, abs_tol=1e-6):
            raise ValueError(
                f"subtotal {self.subtotal} does not match its components ({expected_subtotal})"
            )
        if not math.isclose(
            self.total_value, self.subtotal + self.tax_value, abs_tol=1e-6
        ):
            raise ValueError("total_value must equal subtotal + tax_value")
        return self


class EmissionRequest(BaseModel):
    """Payload handed to the fiscal authority gateway."""

    issuer_tax_id: str
    series: str
    number: int
    recipient_tax_id: str
    recipient_name: str
    recipient_email: Optional[str] = None
    description: str
    quantity: int
    unit_value: float
    total_value: float
    icms_rate: float
    icms_value: float
    issue_date_iso: str
    access_key: Optional[str] = None


class EmissionResponse(BaseModel):
    success: bool
    authority_number: Optional[str] = None
    access_key: Optional[str] = None
    document_xml: Optional[str] = None
    document_pdf_url: Optional[str] = None
    error: Optional[str] = None
    # Explicit refusal by the authority, as opposed to a transient failure
    rejected: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class SaleStats(BaseModel):
    total: int = 0
    pending: int = 0
    confirmed: int = 0
    completed: int = 0
    cancelled: int = 0
    total_revenue: float = 0.0
    average_ticket: float = 0.0
    total_commissions: float = 0.0
    total_margin: float = 0.0


class FiscalReport(BaseModel):
    issuer: str
    period: str
    total_issued: int = 0
    total_authorized: int = 0
    total_rejected: int = 0
    total_cancelled: int = 0
    total_value: float = 0.0
    tax_collected: float = 0.0
    success_rate: float = 0.0
