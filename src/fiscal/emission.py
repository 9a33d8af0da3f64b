"""
Fiscal document (NF-e) emission.

Lifecycle of a document:

    pending -> processing -> authorized | error | rejected
    error   -> processing            (explicit retry through issue())
    any state but cancelled -> cancelled

Every status write is a compare-and-set against the status the transition
starts from, so two callers racing on the same document cannot both move it.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from src.config import Config
from src.db.database import (
    get_fiscal_document,
    get_issuer_config_row,
    get_live_document_for_sale,
    get_sale,
    insert_fiscal_document,
    insert_issuer_config,
    list_fiscal_documents,
    next_sequence_number,
    update_fiscal_document,
    update_issuer_config_row,
)
from src.errors import (
    FiscalDocumentNotFoundError,
    InvalidTransitionError,
    SaleNotBillableError,
    SaleNotFoundError,
)
from src.fiscal.access_key import generate_access_key
from src.fiscal.gateway import FiscalGateway
from src.models.schemas import (
    EmissionRequest,
    EmissionResponse,
    FiscalDocument,
    FiscalStatus,
    IssuerConfig,
    SaleStatus,
    SefazEnvironment,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[FiscalStatus, FrozenSet[FiscalStatus]] = {
    FiscalStatus.PENDING: frozenset({FiscalStatus.PROCESSING, FiscalStatus.CANCELLED}),
    FiscalStatus.PROCESSING: frozenset(
        {
            FiscalStatus.AUTHORIZED,
            FiscalStatus.ERROR,
            FiscalStatus.REJECTED,
            FiscalStatus.CANCELLED,
        }
    ),
    FiscalStatus.ERROR: frozenset({FiscalStatus.PROCESSING, FiscalStatus.CANCELLED}),
    FiscalStatus.AUTHORIZED: frozenset({FiscalStatus.CANCELLED}),
    FiscalStatus.REJECTED: frozenset({FiscalStatus.CANCELLED}),
    FiscalStatus.CANCELLED: frozenset(),
}

BILLABLE_SALE_STATUSES = frozenset({SaleStatus.CONFIRMED, SaleStatus.COMPLETED})

PLACEHOLDER_CNPJ = "00.000.000/0000-00"
PLACEHOLDER_STATE_REGISTRATION = "00.000.000.000.000"

KNOWN_ISSUER_NAMES = {
    "exclusive": "Exclusive Imóveis",
    "giogio": "Gio Gio Temporadas",
    "direta": "Venda Direta",
}


def can_transition(current: FiscalStatus, target: FiscalStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def statuses_leading_to(target: FiscalStatus) -> List[FiscalStatus]:
    return [
        status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets
    ]


def default_issuer_config(issuer: str) -> IssuerConfig:
    """
    Fallback config for an issuer nobody provisioned yet. It never issues
    automatically and always targets the sandbox.
    """
    now = datetime.now()
    return IssuerConfig(
        issuer=issuer,
        name=KNOWN_ISSUER_NAMES.get(issuer, issuer),
        tax_id=PLACEHOLDER_CNPJ,
        registration_id=PLACEHOLDER_STATE_REGISTRATION,
        series=Config.DEFAULT_SERIES,
        auto_issue=False,
        sefaz_environment=SefazEnvironment.SANDBOX,
        tax_rate=Config.DEFAULT_TAX_RATE,
        created_at=now,
        updated_at=now,
    )


def format_document_code(series: str, number: int) -> str:
    return f"{series}{number:09d}"


def build_emission_request(
    document: FiscalDocument, access_key: Optional[str] = None
) -> EmissionRequest:
    nights = document.number_of_nights
    unit_value = round(document.total_value / nights, 2) if nights else document.total_value
    return EmissionRequest(
        issuer_tax_id=document.issuer_tax_id,
        series=document.series,
        number=document.number,
        recipient_tax_id=document.client_tax_id,
        recipient_name=document.client_name,
        recipient_email=document.client_email,
        description=f"Locação de Imóvel - {document.house_name}",
        quantity=max(nights, 1),
        unit_value=unit_value,
        total_value=document.total_value,
        icms_rate=document.tax_rate,
        icms_value=document.tax_value,
        issue_date_iso=document.issue_date.isoformat(),
        access_key=access_key,
    )


def _authorized_payload(document: FiscalDocument) -> EmissionResponse:
    return EmissionResponse(
        success=True,
        authority_number=document.authority_number,
        access_key=document.access_key,
        document_xml=document.xml_content,
        document_pdf_url=document.pdf_url,
        timestamp=document.last_attempt_at or datetime.now(),
    )


class EmissionService:
    """Creates, issues and cancels fiscal documents for rental sales."""

    def __init__(self, conn: sqlite3.Connection, gateway: FiscalGateway):
        self.conn = conn
        self.gateway = gateway

    # ============================================
    # Issuer configuration
    # ============================================

    def get_issuer_config(self, issuer: str) -> IssuerConfig:
        """Returns the issuer config, creating the default one on first use."""
        config = get_issuer_config_row(self.conn, issuer)
        if config is not None:
            return config

        logger.warning(
            "No fiscal configuration for issuer %s. Creating default configuration...",
            issuer,
        )
        insert_issuer_config(self.conn, default_issuer_config(issuer))
        # Re-read: a concurrent caller may have inserted first
        return get_issuer_config_row(self.conn, issuer)

    def update_issuer_config(self, issuer: str, **changes) -> IssuerConfig:
        current = self.get_issuer_config(issuer)
        data = current.model_dump()
        data.update(changes)
        data["issuer"] = issuer
        data["updated_at"] = datetime.now()
        updated = IssuerConfig(**data)
        update_issuer_config_row(self.conn, updated)
        return updated

    # ============================================
    # Queries
    # ============================================

    def get_document(self, document_id: int) -> FiscalDocument:
        document = get_fiscal_document(self.conn, document_id)
        if document is None:
            raise FiscalDocumentNotFoundError(f"Fiscal document {document_id} not found")
        return document

    def list_documents(self, **filters) -> List[FiscalDocument]:
        return list_fiscal_documents(self.conn, **filters)

    # ============================================
    # Lifecycle
    # ============================================

    def create(
        self,
        sale_id: int,
        issuer: Optional[str] = None,
        issue_date: Optional[datetime] = None,
    ) -> FiscalDocument:
        """
        Numbers and stores a pending document mirroring the sale's values.
        Issues it right away when the issuer has auto_issue enabled.
        """
        sale = get_sale(self.conn, sale_id)
        if sale is None:
            raise SaleNotFoundError(f"Sale {sale_id} not found")

        if sale.status not in BILLABLE_SALE_STATUSES:
            raise SaleNotBillableError(
                f"Sale {sale.code} is {sale.status.value}; only confirmed or "
                f"completed sales can be billed"
            )

        live = get_live_document_for_sale(self.conn, sale_id)
        if live is not None:
            raise SaleNotBillableError(
                f"Sale {sale.code} already has fiscal document {live.code} ({live.status.value})"
            )

        issuer = issuer or sale.company
        config = self.get_issuer_config(issuer)

        # Raises SequenceAllocationError; nothing is stored in that case
        number = next_sequence_number(self.conn, issuer, config.series)

        daily_rate_value = sale.contract_value
        concierge_value = sale.concierge_value
        additional_services_value = sale.total_additional_sales
        discount_value = sale.discount
        subtotal = (
            daily_rate_value
            + concierge_value
            + additional_services_value
            - discount_value
        )
        tax_value = subtotal * config.tax_rate / 100
        now = datetime.now()

        document = FiscalDocument(
            number=number,
            series=config.series,
            code=format_document_code(config.series, number),
            issuer=issuer,
            issuer_name=config.name,
            issuer_tax_id=config.tax_id,
            client_id=sale.client_id,
            client_name=sale.client_name,
            client_tax_id=sale.client_cpf,
            client_email=sale.client_email,
            sale_id=sale.id,
            sale_code=sale.code,
            house_id=sale.house_id,
            house_name=sale.house_name,
            check_in=sale.check_in,
            check_out=sale.check_out,
            number_of_nights=sale.number_of_nights,
            daily_rate_value=daily_rate_value,
            concierge_value=concierge_value,
            additional_services_value=additional_services_value,
            discount_value=discount_value,
            subtotal=subtotal,
            tax_rate=config.tax_rate,
            tax_value=tax_value,
            total_value=subtotal + tax_value,
            issue_date=issue_date or now,
            status=FiscalStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            document.id = insert_fiscal_document(self.conn, document)
        except sqlite3.IntegrityError as e:
            live = get_live_document_for_sale(self.conn, sale_id)
            if live is None:
                raise
            raise SaleNotBillableError(
                f"Sale {sale.code} already has fiscal document {live.code} ({live.status.value})"
            ) from e

        logger.info(
            "Fiscal document %s created for sale %s (issuer %s)",
            document.code,
            sale.code,
            issuer,
        )

        if config.auto_issue:
            self.issue(document.id)
            return self.get_document(document.id)

        return document

    def issue(self, document_id: int) -> EmissionResponse:
        """
        Sends the document to the authority once. Authorized documents are
        returned as they are, without a second gateway call. A failed call
        leaves the document in error; retrying means calling issue again.
        """
        document = self.get_document(document_id)

        if document.status == FiscalStatus.AUTHORIZED:
            return _authorized_payload(document)

        if not can_transition(document.status, FiscalStatus.PROCESSING):
            raise InvalidTransitionError(
                document_id, document.status, FiscalStatus.PROCESSING
            )

        attempt_at = datetime.now()
        claimed = update_fiscal_document(
            self.conn,
            document_id,
            {"status": FiscalStatus.PROCESSING, "last_attempt_at": attempt_at},
            expected_statuses=statuses_leading_to(FiscalStatus.PROCESSING),
        )
        if not claimed:
            # Someone else moved it between our read and the claim
            current = self.get_document(document_id)
            if current.status == FiscalStatus.AUTHORIZED:
                return _authorized_payload(current)
            raise InvalidTransitionError(
                document_id, current.status, FiscalStatus.PROCESSING
            )

        # Re-read: a rival attempt may have bumped failure_attempts before our claim
        document = self.get_document(document_id)

        access_key = generate_access_key(
            document.issuer_tax_id,
            document.series,
            document.number,
            document.issue_date,
        )
        request = build_emission_request(document, access_key)

        try:
            response = self.gateway.emit(request)
        except Exception as e:
            logger.exception("Fiscal gateway call failed for document %s", document.code)
            response = EmissionResponse(success=False, error=str(e))

        if response.success and not response.authority_number:
            response = EmissionResponse(
                success=False,
                error="Authority response did not include a document number",
            )

        if response.success:
            fields = {
                "status": FiscalStatus.AUTHORIZED,
                "authority_number": response.authority_number,
                "access_key": response.access_key or access_key,
                "xml_content": response.document_xml,
                "pdf_url": response.document_pdf_url,
                "emission_error": None,
            }
            logger.info(
                "Fiscal document %s authorized: %s",
                document.code,
                response.authority_number,
            )
        else:
            target = FiscalStatus.REJECTED if response.rejected else FiscalStatus.ERROR
            fields = {
                "status": target,
                "emission_error": response.error or "Erro desconhecido",
                "failure_attempts": document.failure_attempts + 1,
                "last_attempt_at": response.timestamp,
            }
            logger.warning(
                "Fiscal document %s %s: %s",
                document.code,
                target.value,
                fields["emission_error"],
            )

        recorded = update_fiscal_document(
            self.conn,
            document_id,
            fields,
            expected_statuses=[FiscalStatus.PROCESSING],
        )
        if not recorded:
            logger.warning(
                "Fiscal document %s left processing while the gateway call was in flight; "
                "outcome not recorded",
                document.code,
            )

        return response

    def cancel(self, document_id: int, reason: str) -> FiscalDocument:
        """
        Cancels the document locally. Authority number and key of an
        authorized document stay as they were.
        """
        if not reason or not reason.strip():
            raise ValueError("A cancellation reason is required")

        document = self.get_document(document_id)
        if not can_transition(document.status, FiscalStatus.CANCELLED):
            raise InvalidTransitionError(
                document_id, document.status, FiscalStatus.CANCELLED
            )

        cancelled = update_fiscal_document(
            self.conn,
            document_id,
            {"status": FiscalStatus.CANCELLED, "cancellation_reason": reason.strip()},
            expected_statuses=statuses_leading_to(FiscalStatus.CANCELLED),
        )
        if not cancelled:
            current = self.get_document(document_id)
            raise InvalidTransitionError(
                document_id, current.status, FiscalStatus.CANCELLED
            )

        logger.info("Fiscal document %s cancelled: %s", document.code, reason.strip())
        return self.get_document(document_id)
