import pytest
from datetime import datetime
from unittest.mock import patch
from src.db.database import get_connection, init_db, update_fiscal_document
from src.errors import (
    FiscalDocumentNotFoundError,
    FiscalGatewayError,
    InvalidTransitionError,
    SaleNotBillableError,
    SaleNotFoundError,
    SequenceAllocationError,
)
from src.fiscal.access_key import ACCESS_KEY_LENGTH, generate_access_key
import src.fiscal.emission as emission
from src.fiscal.emission import (
    ALLOWED_TRANSITIONS,
    EmissionService,
    can_transition,
    default_issuer_config,
)
from src.fiscal.gateway import FiscalGateway, SimulatedFiscalGateway
from src.logic.sales import create_sale, set_sale_status
from src.models.schemas import FiscalStatus, SaleStatus, SefazEnvironment


@pytest.fixture
def db_conn():
    conn = get_connection(":memory:")
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def gateway():
    return SimulatedFiscalGateway()


@pytest.fixture
def service(db_conn, gateway):
    return EmissionService(db_conn, gateway)


def _confirmed_sale(conn, house_id="CASA-01", company="exclusive", **overrides):
    payload = {
        "company": company,
        "client_id": "CLI-001",
        "client_name": "João Silva",
        "client_cpf": "12345678900",
        "house_id": house_id,
        "house_name": "Casa Pé na Areia",
        "check_in": datetime(2025, 6, 10),
        "check_out": datetime(2025, 6, 13),
        "number_of_guests": 4,
        "contract_value": 3000.0,
        "discount": 200.0,
        "housekeeper_value": 150.0,
        "concierge_value": 100.0,
    }
    payload.update(overrides)
    sale = create_sale(conn, payload)
    return set_sale_status(conn, sale.id, SaleStatus.CONFIRMED)


# =====================================================================
# TRANSITION TABLE
# =====================================================================


def test_transition_table_covers_every_status():
    assert set(ALLOWED_TRANSITIONS) == set(FiscalStatus)


def test_only_cancelled_is_final():
    for status in FiscalStatus:
        if status == FiscalStatus.CANCELLED:
            assert not ALLOWED_TRANSITIONS[status]
        else:
            assert can_transition(status, FiscalStatus.CANCELLED)


def test_rejected_is_not_retryable():
    assert not can_transition(FiscalStatus.REJECTED, FiscalStatus.PROCESSING)
    assert can_transition(FiscalStatus.ERROR, FiscalStatus.PROCESSING)


# =====================================================================
# CREATE
# =====================================================================


def test_create_mirrors_sale_values(db_conn, service):
    sale = _confirmed_sale(db_conn)

    document = service.create(sale.id, issue_date=datetime(2025, 6, 14))

    assert document.status == FiscalStatus.PENDING
    assert document.number == 1
    assert document.series == "1"
    assert document.code == "1000000001"
    assert document.sale_code == sale.code
    assert document.daily_rate_value == 3000.0
    assert document.discount_value == 200.0
    assert document.concierge_value == 100.0
    assert document.additional_services_value == 0.0
    assert document.subtotal == pytest.approx(2900.0)
    assert document.tax_rate == 6.0
    assert document.tax_value == pytest.approx(174.0)
    assert document.total_value == pytest.approx(3074.0)
    assert document.failure_attempts == 0
    assert document.authority_number is None

    assert service.get_document(document.id) == document


def test_create_numbers_documents_sequentially(db_conn, service):
    first = service.create(_confirmed_sale(db_conn, house_id="CASA-01").id)
    second = service.create(_confirmed_sale(db_conn, house_id="CASA-02").id)

    assert (first.number, second.number) == (1, 2)
    assert second.code == "1000000002"


def test_create_requires_existing_sale(service):
    with pytest.raises(SaleNotFoundError):
        service.create(404)


@pytest.mark.parametrize("status", [SaleStatus.PENDING, SaleStatus.CANCELLED])
def test_create_requires_billable_sale(db_conn, service, status):
    sale = _confirmed_sale(db_conn)
    set_sale_status(db_conn, sale.id, status)

    with pytest.raises(SaleNotBillableError):
        service.create(sale.id)


def test_create_refuses_second_live_document(db_conn, service):
    sale = _confirmed_sale(db_conn)
    service.create(sale.id)

    with pytest.raises(SaleNotBillableError):
        service.create(sale.id)


def test_rejected_document_can_be_replaced(db_conn):
    service = EmissionService(db_conn, SimulatedFiscalGateway(outcomes=["rejected"]))
    sale = _confirmed_sale(db_conn)
    rejected = service.create(sale.id)
    service.issue(rejected.id)

    replacement = service.create(sale.id)

    assert replacement.number == rejected.number + 1
    assert replacement.status == FiscalStatus.PENDING


def test_allocation_failure_creates_no_document(db_conn, service):
    sale = _confirmed_sale(db_conn)

    with patch(
        "src.fiscal.emission.next_sequence_number",
        side_effect=SequenceAllocationError("disk full"),
    ):
        with pytest.raises(SequenceAllocationError):
            service.create(sale.id)

    assert service.list_documents() == []


def test_create_auto_issues_when_configured(db_conn, service, gateway):
    service.update_issuer_config("exclusive", auto_issue=True)
    sale = _confirmed_sale(db_conn)

    document = service.create(sale.id)

    assert document.status == FiscalStatus.AUTHORIZED
    assert len(gateway.calls) == 1


# =====================================================================
# ISSUER CONFIG
# =====================================================================


def test_missing_config_is_created_with_safe_defaults(db_conn, service):
    assert db_conn.execute("SELECT COUNT(*) FROM issuer_configs").fetchone()[0] == 0

    config = service.get_issuer_config("exclusive")

    assert config.name == "Exclusive Imóveis"
    assert config.auto_issue is False
    assert config.sefaz_environment == SefazEnvironment.SANDBOX
    assert db_conn.execute("SELECT COUNT(*) FROM issuer_configs").fetchone()[0] == 1
    assert service.get_issuer_config("exclusive") == config


def test_unknown_issuer_gets_generic_default():
    config = default_issuer_config("nova-imobiliaria")

    assert config.name == "nova-imobiliaria"
    assert config.auto_issue is False


def test_issuer_tax_rate_drives_document_tax(db_conn, service):
    service.update_issuer_config("exclusive", tax_rate=10.0, series="2", tax_id="12.345.678/0001-90")
    sale = _confirmed_sale(db_conn)

    document = service.create(sale.id)

    assert document.series == "2"
    assert document.code == "2000000001"
    assert document.issuer_tax_id == "12.345.678/0001-90"
    assert document.tax_value == pytest.approx(290.0)
    assert document.total_value == pytest.approx(3190.0)


# =====================================================================
# ISSUE
# =====================================================================


def test_issue_success_authorizes_document(db_conn, service, gateway):
    service.update_issuer_config("exclusive", tax_id="12.345.678/0001-90")
    sale = _confirmed_sale(db_conn)
    document = service.create(sale.id, issue_date=datetime(2025, 6, 10))

    response = service.issue(document.id)

    assert response.success is True
    stored = service.get_document(document.id)
    assert stored.status == FiscalStatus.AUTHORIZED
    assert stored.authority_number == "1000000001"
    assert stored.access_key == generate_access_key(
        "12.345.678/0001-90", "1", 1, datetime(2025, 6, 10)
    )
    assert len(stored.access_key) == ACCESS_KEY_LENGTH
    assert stored.xml_content.startswith("<?xml")
    assert stored.pdf_url.endswith(f"{stored.access_key}.pdf")
    assert stored.last_attempt_at is not None

    request = gateway.calls[0]
    assert request.number == 1
    assert request.quantity == 3
    assert request.recipient_tax_id == "12345678900"
    assert request.icms_value == pytest.approx(stored.tax_value)


def test_issue_is_idempotent_once_authorized(db_conn, service, gateway):
    sale = _confirmed_sale(db_conn)
    document = service.create(sale.id)

    first = service.issue(document.id)
    second = service.issue(document.id)

    assert len(gateway.calls) == 1
    assert second.success is True
    assert second.authority_number == first.authority_number
    assert second.access_key == first.access_key


def test_failed_issue_records_error_and_can_be_retried(db_conn):
    gateway = SimulatedFiscalGateway(outcomes=["error", "error", "success"])
    service = EmissionService(db_conn, gateway)
    document = service.create(_confirmed_sale(db_conn).id)

    response = service.issue(document.id)

    assert response.success is False
    stored = service.get_document(document.id)
    assert stored.status == FiscalStatus.ERROR
    assert stored.failure_attempts == 1
    assert "SEFAZ" in stored.emission_error
    assert stored.last_attempt_at is not None

    service.issue(document.id)
    assert service.get_document(document.id).failure_attempts == 2

    response = service.issue(document.id)
    stored = service.get_document(document.id)
    assert response.success is True
    assert stored.status == FiscalStatus.AUTHORIZED
    assert stored.failure_attempts == 2
    assert stored.emission_error is None
    assert len(gateway.calls) == 3


def test_gateway_exception_is_recorded_as_error(db_conn):
    gateway = SimulatedFiscalGateway(outcomes=[FiscalGatewayError("timeout")])
    service = EmissionService(db_conn, gateway)
    document = service.create(_confirmed_sale(db_conn).id)

    response = service.issue(document.id)

    assert response.success is False
    stored = service.get_document(document.id)
    assert stored.status == FiscalStatus.ERROR
    assert stored.failure_attempts == 1
    assert "timeout" in stored.emission_error


def test_success_without_authority_number_is_an_error(db_conn):
    class SilentGateway(FiscalGateway):
        def emit(self, request):
            from src.models.schemas import EmissionResponse

            return EmissionResponse(success=True)

    service = EmissionService(db_conn, SilentGateway())
    document = service.create(_confirmed_sale(db_conn).id)

    service.issue(document.id)

    assert service.get_document(document.id).status == FiscalStatus.ERROR


def test_rejected_document_cannot_be_reissued(db_conn):
    gateway = SimulatedFiscalGateway(outcomes=["rejected"])
    service = EmissionService(db_conn, gateway)
    document = service.create(_confirmed_sale(db_conn).id)

    service.issue(document.id)
    stored = service.get_document(document.id)
    assert stored.status == FiscalStatus.REJECTED
    assert stored.failure_attempts == 1

    with pytest.raises(InvalidTransitionError):
        service.issue(document.id)
    assert len(gateway.calls) == 1


def test_issue_on_document_in_flight_is_rejected(db_conn, service, gateway):
    document = service.create(_confirmed_sale(db_conn).id)
    update_fiscal_document(db_conn, document.id, {"status": FiscalStatus.PROCESSING})

    with pytest.raises(InvalidTransitionError):
        service.issue(document.id)
    assert gateway.calls == []


def test_concurrent_issue_during_gateway_call_is_rejected(db_conn):
    """
    While the first issue() waits on the authority the document sits in
    processing; a second issue() arriving in that window must not call out.
    """
    inner_errors = []

    class ReentrantGateway(SimulatedFiscalGateway):
        def emit(self, request):
            try:
                service.issue(document.id)
            except InvalidTransitionError as e:
                inner_errors.append(e)
            return super().emit(request)

    gateway = ReentrantGateway()
    service = EmissionService(db_conn, gateway)
    document = service.create(_confirmed_sale(db_conn).id)

    response = service.issue(document.id)

    assert response.success is True
    assert len(inner_errors) == 1
    assert len(gateway.calls) == 1
    assert service.get_document(document.id).status == FiscalStatus.AUTHORIZED


def test_retry_counts_attempt_finished_before_claim(db_conn):
    """
    A reads the document in error, B runs a whole failed retry, then A claims
    and fails too: both failures must be counted.
    """
    gateway = SimulatedFiscalGateway(outcomes=["error", "error", "error"])
    service = EmissionService(db_conn, gateway)
    document = service.create(_confirmed_sale(db_conn).id)
    service.issue(document.id)
    assert service.get_document(document.id).failure_attempts == 1

    real_update = emission.update_fiscal_document
    rival_ran = []

    def update_after_rival(conn, document_id, fields, expected_statuses=None):
        if not rival_ran and fields.get("status") == FiscalStatus.PROCESSING:
            rival_ran.append(True)
            service.issue(document_id)
        return real_update(conn, document_id, fields, expected_statuses=expected_statuses)

    with patch("src.fiscal.emission.update_fiscal_document", side_effect=update_after_rival):
        service.issue(document.id)

    stored = service.get_document(document.id)
    assert len(gateway.calls) == 3
    assert stored.status == FiscalStatus.ERROR
    assert stored.failure_attempts == 3


def test_concurrent_create_for_same_sale_keeps_one_live_document(db_conn, service):
    sale = _confirmed_sale(db_conn)
    real_next = emission.next_sequence_number
    rival = []

    def next_after_rival(conn, issuer, series):
        if not rival:
            rival.append(None)
            rival[0] = service.create(sale.id)
        return real_next(conn, issuer, series)

    with patch("src.fiscal.emission.next_sequence_number", side_effect=next_after_rival):
        with pytest.raises(SaleNotBillableError):
            service.create(sale.id)

    live = [
        d
        for d in service.list_documents()
        if d.status not in (FiscalStatus.REJECTED, FiscalStatus.CANCELLED)
    ]
    assert [d.id for d in live] == [rival[0].id]
    assert not db_conn.in_transaction


def test_cancel_during_gateway_call_wins(db_conn):
    class CancellingGateway(SimulatedFiscalGateway):
        def emit(self, request):
            service.cancel(document.id, "cliente desistiu")
            return super().emit(request)

    service = EmissionService(db_conn, CancellingGateway())
    document = service.create(_confirmed_sale(db_conn).id)

    response = service.issue(document.id)

    stored = service.get_document(document.id)
    assert response.success is True
    assert stored.status == FiscalStatus.CANCELLED
    assert stored.authority_number is None
    assert stored.cancellation_reason == "cliente desistiu"


def test_issue_missing_document(service):
    with pytest.raises(FiscalDocumentNotFoundError):
        service.issue(12345)


# =====================================================================
# CANCEL
# =====================================================================


def test_cancel_authorized_keeps_authority_data(db_conn, service, gateway):
    document = service.create(_confirmed_sale(db_conn).id)
    service.issue(document.id)
    authorized = service.get_document(document.id)

    cancelled = service.cancel(document.id, "client request")

    assert cancelled.status == FiscalStatus.CANCELLED
    assert cancelled.cancellation_reason == "client request"
    assert cancelled.authority_number == authorized.authority_number
    assert cancelled.access_key == authorized.access_key

    with pytest.raises(InvalidTransitionError):
        service.issue(document.id)
    assert len(gateway.calls) == 1


@pytest.mark.parametrize("outcomes", [[], ["error"], ["rejected"]])
def test_cancel_from_any_live_state(db_conn, outcomes):
    service = EmissionService(db_conn, SimulatedFiscalGateway(outcomes=outcomes))
    document = service.create(_confirmed_sale(db_conn).id)
    if outcomes:
        service.issue(document.id)

    assert service.cancel(document.id, "duplicada").status == FiscalStatus.CANCELLED


def test_cancel_twice_is_rejected(db_conn, service):
    document = service.create(_confirmed_sale(db_conn).id)
    service.cancel(document.id, "erro de digitação")

    with pytest.raises(InvalidTransitionError):
        service.cancel(document.id, "again")


def test_cancel_requires_reason(db_conn, service):
    document = service.create(_confirmed_sale(db_conn).id)

    with pytest.raises(ValueError):
        service.cancel(document.id, "   ")
    assert service.get_document(document.id).status == FiscalStatus.PENDING


def test_cancelled_document_frees_the_sale_for_a_new_one(db_conn, service):
    sale = _confirmed_sale(db_conn)
    first = service.create(sale.id)
    service.cancel(first.id, "valor errado")

    second = service.create(sale.id)

    assert second.number == 2


# =====================================================================
# QUERIES
# =====================================================================


def test_list_documents_filters(db_conn, service):
    a = service.create(_confirmed_sale(db_conn, house_id="CASA-01", house_name="Villa Azul").id)
    b = service.create(
        _confirmed_sale(db_conn, house_id="CASA-02", company="giogio", house_name="Chalé").id
    )
    service.issue(a.id)

    assert {d.id for d in service.list_documents()} == {a.id, b.id}
    assert [d.id for d in service.list_documents(issuer="giogio")] == [b.id]
    assert [d.id for d in service.list_documents(status=FiscalStatus.AUTHORIZED)] == [a.id]
    assert [d.id for d in service.list_documents(search="villa")] == [a.id]
