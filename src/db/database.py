import json
import logging
import sqlite3
from datetime import datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

from src.config import Config
from src.errors import SequenceAllocationError
from src.models.schemas import (
    AdditionalSales,
    FiscalDocument,
    FiscalStatus,
    IssuerConfig,
    Sale,
    SaleStatus,
    SequenceCounter,
)

logger = logging.getLogger(__name__)

# SQL Templates
SQL_ALLOCATE_SEQUENCE = """
    INSERT INTO sequence_counters (issuer, series, last_number, last_allocated_at)
    VALUES (:issuer, :series, 1, :now)
    ON CONFLICT(issuer, series) DO UPDATE SET
        last_number = last_number + 1,
        last_allocated_at = excluded.last_allocated_at
"""

SQL_READ_SEQUENCE = """
    SELECT issuer, series, last_number, last_allocated_at
    FROM sequence_counters
    WHERE issuer = ? AND series = ?
"""

SALE_COLUMNS = (
    "code",
    "company",
    "client_id",
    "client_name",
    "client_cpf",
    "client_email",
    "client_phone",
    "sale_origin",
    "house_id",
    "house_name",
    "check_in",
    "check_out",
    "number_of_guests",
    "contract_value",
    "discount",
    "housekeeper_value",
    "concierge_value",
    "additional_sales",
    "status",
    "number_of_nights",
    "net_value",
    "sales_commission",
    "total_additional_sales",
    "total_revenue",
    "contribution_margin",
    "created_at",
    "updated_at",
)

FISCAL_DOCUMENT_COLUMNS = (
    "number",
    "series",
    "code",
    "issuer",
    "issuer_name",
    "issuer_tax_id",
    "client_id",
    "client_name",
    "client_tax_id",
    "client_email",
    "sale_id",
    "sale_code",
    "house_id",
    "house_name",
    "check_in",
    "check_out",
    "number_of_nights",
    "daily_rate_value",
    "concierge_value",
    "additional_services_value",
    "discount_value",
    "subtotal",
    "tax_rate",
    "tax_value",
    "total_value",
    "issue_date",
    "status",
    "authority_number",
    "access_key",
    "xml_content",
    "pdf_url",
    "emission_error",
    "cancellation_reason",
    "failure_attempts",
    "last_attempt_at",
    "created_at",
    "updated_at",
)

ISSUER_CONFIG_COLUMNS = (
    "issuer",
    "name",
    "tax_id",
    "registration_id",
    "series",
    "auto_issue",
    "sefaz_environment",
    "tax_rate",
    "certificate_path",
    "created_at",
    "updated_at",
)


def get_connection(
    db_path: str = Config.DB_NAME, timeout: float = 30.0
) -> sqlite3.Connection:
    """Returns a connection to the SQLite database defined by the config."""
    conn = sqlite3.connect(db_path, timeout=timeout)
    # Enable foreign keys
    conn.execute("PRAGMA foreign_keys = ON;")
    # Return rows as dictionaries
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection):
    """Initializes the SQLite database with the required tables."""
    cur = conn.cursor()

    cur.execute("""
        CREATE TABLE IF NOT EXISTS sales (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT NOT NULL UNIQUE,
            company TEXT NOT NULL,
            client_id TEXT NOT NULL,
            client_name TEXT,
            client_cpf TEXT,
            client_email TEXT,
            client_phone TEXT,
            sale_origin TEXT,
            house_id TEXT NOT NULL,
            house_name TEXT,
            check_in TIMESTAMP NOT NULL,
            check_out TIMESTAMP NOT NULL,
            number_of_guests INTEGER NOT NULL,
            contract_value REAL NOT NULL,
            discount REAL NOT NULL DEFAULT 0,
            housekeeper_value REAL NOT NULL DEFAULT 0,
            concierge_value REAL NOT NULL DEFAULT 0,
            additional_sales TEXT NOT NULL,
            status TEXT NOT NULL,
            number_of_nights INTEGER NOT NULL,
            net_value REAL NOT NULL,
            sales_commission REAL NOT NULL,
            total_additional_sales REAL NOT NULL,
            total_revenue REAL NOT NULL,
            contribution_margin REAL NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    """)
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_sales_house_status ON sales (house_id, status)"
    )

    cur.execute("""
        CREATE TABLE IF NOT EXISTS sequence_counters (
            issuer TEXT NOT NULL,
            series TEXT NOT NULL,
            last_number INTEGER NOT NULL,
            last_allocated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (issuer, series)
        )
    """)

    cur.execute("""
        CREATE TABLE IF NOT EXISTS issuer_configs (
            issuer TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            tax_id TEXT NOT NULL,
            registration_id TEXT,
            series TEXT NOT NULL,
            auto_issue BOOLEAN NOT NULL DEFAULT 0,
            sefaz_environment TEXT NOT NULL DEFAULT 'sandbox',
            tax_rate REAL NOT NULL,
            certificate_path TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    """)

    cur.execute("""
        CREATE TABLE IF NOT EXISTS fiscal_documents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            number INTEGER NOT NULL,
            series TEXT NOT NULL,
            code TEXT NOT NULL,
            issuer TEXT NOT NULL,
            issuer_name TEXT NOT NULL,
            issuer_tax_id TEXT NOT NULL,
            client_id TEXT NOT NULL,
            client_name TEXT NOT NULL,
            client_tax_id TEXT,
            client_email TEXT,
            sale_id INTEGER NOT NULL REFERENCES sales (id),
            sale_code TEXT NOT NULL,
            house_id TEXT NOT NULL,
            house_name TEXT,
            check_in TIMESTAMP NOT NULL,
            check_out TIMESTAMP NOT NULL,
            number_of_nights INTEGER NOT NULL,
            daily_rate_value REAL NOT NULL,
            concierge_value REAL NOT NULL,
            additional_services_value REAL NOT NULL,
            discount_value REAL NOT NULL,
            subtotal REAL NOT NULL,
            tax_rate REAL NOT NULL,
            tax_value REAL NOT NULL,
            total_value REAL NOT NULL,
            issue_date TIMESTAMP NOT NULL,
            status TEXT NOT NULL,
            authority_number TEXT,
            access_key TEXT,
            xml_content TEXT,
            pdf_url TEXT,
            emission_error TEXT,
            cancellation_reason TEXT,
            failure_attempts INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (issuer, series, number)
        )
    """)
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_fiscal_documents_sale ON fiscal_documents (sale_id)"
    )
    # At most one live document per sale
    cur.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_fiscal_documents_live_sale
        ON fiscal_documents (sale_id)
        WHERE status NOT IN ('rejected', 'cancelled')
    """)

    conn.commit()


# =====================================================================
# Row conversion helpers
# =====================================================================


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, AdditionalSales):
        return json.dumps(value.model_dump())
    if hasattr(value, "value"):
        # Enums
        return value.value
    return value


def _row_to_sale(row: sqlite3.Row) -> Sale:
    data = dict(row)
    data["additional_sales"] = json.loads(data["additional_sales"] or "{}")
    return Sale(**data)


def _row_to_fiscal_document(row: sqlite3.Row) -> FiscalDocument:
    return FiscalDocument(**dict(row))


def _row_to_issuer_config(row: sqlite3.Row) -> IssuerConfig:
    data = dict(row)
    data["auto_issue"] = bool(data["auto_issue"])
    return IssuerConfig(**data)


# =====================================================================
# Sales
# =====================================================================


def insert_sale(conn: sqlite3.Connection, sale: Sale) -> int:
    """Inserts a fully projected sale and returns its new id."""
    values = [_to_db(getattr(sale, column)) for column in SALE_COLUMNS]
    placeholders = ", ".join("?" for _ in SALE_COLUMNS)
    cur = conn.execute(
        f"INSERT INTO sales ({', '.join(SALE_COLUMNS)}) VALUES ({placeholders})",
        values,
    )
    conn.commit()
    return cur.lastrowid


def update_sale_row(conn: sqlite3.Connection, sale: Sale):
    """Overwrites every stored column of an existing sale."""
    columns = [c for c in SALE_COLUMNS if c not in ("code", "created_at")]
    assignments = ", ".join(f"{column} = ?" for column in columns)
    values = [_to_db(getattr(sale, column)) for column in columns]
    conn.execute(f"UPDATE sales SET {assignments} WHERE id = ?", values + [sale.id])
    conn.commit()


def update_sale_status(
    conn: sqlite3.Connection, sale_id: int, status: SaleStatus
) -> bool:
    cur = conn.execute(
        "UPDATE sales SET status = ?, updated_at = ? WHERE id = ?",
        (status.value, datetime.now().isoformat(), sale_id),
    )
    conn.commit()
    return cur.rowcount == 1


def get_sale(conn: sqlite3.Connection, sale_id: int) -> Optional[Sale]:
    row = conn.execute("SELECT * FROM sales WHERE id = ?", (sale_id,)).fetchone()
    return _row_to_sale(row) if row else None


def list_sales(
    conn: sqlite3.Connection,
    house_id: Optional[str] = None,
    status: Optional[SaleStatus] = None,
    exclude_cancelled: bool = False,
) -> List[Sale]:
    conditions = []
    params: List[Any] = []
    if house_id:
        conditions.append("house_id = ?")
        params.append(house_id)
    if status:
        conditions.append("status = ?")
        params.append(status.value)
    if exclude_cancelled:
        conditions.append("status != ?")
        params.append(SaleStatus.CANCELLED.value)

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM sales {where_clause} ORDER BY created_at DESC, id DESC", params
    ).fetchall()
    return [_row_to_sale(row) for row in rows]


# =====================================================================
# Sequence counters
# =====================================================================


def next_sequence_number(conn: sqlite3.Connection, issuer: str, series: str) -> int:
    """
    Allocates the next number of the (issuer, series) counter.

    The increment and the read-back run inside one IMMEDIATE transaction, so
    the write lock is taken before the counter is read and concurrent callers
    on other connections are serialized. Nothing is allocated unless the
    commit succeeds. The connection must not hold an open transaction.
    """
    if conn.in_transaction:
        raise SequenceAllocationError(
            "Sequence allocation requires a connection without an open transaction"
        )

    now = datetime.now().isoformat()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            SQL_ALLOCATE_SEQUENCE, {"issuer": issuer, "series": series, "now": now}
        )
        row = conn.execute(SQL_READ_SEQUENCE, (issuer, series)).fetchone()
        conn.commit()
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.rollback()
        logger.error("Sequence allocation failed for %s/%s: %s", issuer, series, e)
        raise SequenceAllocationError(
            f"Could not allocate a number for issuer {issuer} series {series}"
        ) from e

    return row["last_number"]


def get_sequence_counter(
    conn: sqlite3.Connection, issuer: str, series: str
) -> Optional[SequenceCounter]:
    row = conn.execute(SQL_READ_SEQUENCE, (issuer, series)).fetchone()
    return SequenceCounter(**dict(row)) if row else None


# =====================================================================
# Issuer configs
# =====================================================================


def get_issuer_config_row(
    conn: sqlite3.Connection, issuer: str
) -> Optional[IssuerConfig]:
    row = conn.execute(
        "SELECT * FROM issuer_configs WHERE issuer = ?", (issuer,)
    ).fetchone()
    return _row_to_issuer_config(row) if row else None


def insert_issuer_config(conn: sqlite3.Connection, config: IssuerConfig):
    """Inserts the config unless another caller created it first."""
    values = [_to_db(getattr(config, column)) for column in ISSUER_CONFIG_COLUMNS]
    placeholders = ", ".join("?" for _ in ISSUER_CONFIG_COLUMNS)
    conn.execute(
        f"""
        INSERT INTO issuer_configs ({', '.join(ISSUER_CONFIG_COLUMNS)})
        VALUES ({placeholders})
        ON CONFLICT(issuer) DO NOTHING
    """,
        values,
    )
    conn.commit()


def update_issuer_config_row(conn: sqlite3.Connection, config: IssuerConfig):
    columns = [c for c in ISSUER_CONFIG_COLUMNS if c not in ("issuer", "created_at")]
    assignments = ", ".join(f"{column} = ?" for column in columns)
    values = [_to_db(getattr(config, column)) for column in columns]
    conn.execute(
        f"UPDATE issuer_configs SET {assignments} WHERE issuer = ?",
        values + [config.issuer],
    )
    conn.commit()


# =====================================================================
# Fiscal documents
# =====================================================================


def insert_fiscal_document(conn: sqlite3.Connection, document: FiscalDocument) -> int:
    """
    Inserts a document and returns its new id. Raises sqlite3.IntegrityError,
    with nothing left pending, when the sale already has a live document.
    """
    values = [_to_db(getattr(document, column)) for column in FISCAL_DOCUMENT_COLUMNS]
    placeholders = ", ".join("?" for _ in FISCAL_DOCUMENT_COLUMNS)
    try:
        cur = conn.execute(
            f"INSERT INTO fiscal_documents ({', '.join(FISCAL_DOCUMENT_COLUMNS)}) "
            f"VALUES ({placeholders})",
            values,
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    conn.commit()
    return cur.lastrowid


def get_fiscal_document(
    conn: sqlite3.Connection, document_id: int
) -> Optional[FiscalDocument]:
    row = conn.execute(
        "SELECT * FROM fiscal_documents WHERE id = ?", (document_id,)
    ).fetchone()
    return _row_to_fiscal_document(row) if row else None


def update_fiscal_document(
    conn: sqlite3.Connection,
    document_id: int,
    fields: Dict[str, Any],
    expected_statuses: Optional[Iterable[FiscalStatus]] = None,
) -> bool:
    """
    Updates the given columns of a fiscal document.

    When expected_statuses is given the row only changes if its current
    status is one of them; the return value tells whether it did.
    """
    unknown = set(fields) - set(FISCAL_DOCUMENT_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown fiscal document columns: {sorted(unknown)}")

    fields = dict(fields, updated_at=datetime.now())
    assignments = ", ".join(f"{column} = ?" for column in fields)
    params = [_to_db(value) for value in fields.values()] + [document_id]

    query = f"UPDATE fiscal_documents SET {assignments} WHERE id = ?"
    if expected_statuses is not None:
        statuses = [s.value for s in expected_statuses]
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    cur = conn.execute(query, params)
    conn.commit()
    return cur.rowcount == 1


def get_live_document_for_sale(
    conn: sqlite3.Connection, sale_id: int
) -> Optional[FiscalDocument]:
    """Latest document of the sale that is neither rejected nor cancelled."""
    row = conn.execute(
        """
        SELECT * FROM fiscal_documents
        WHERE sale_id = ? AND status NOT IN (?, ?)
        ORDER BY id DESC
        LIMIT 1
    """,
        (sale_id, FiscalStatus.REJECTED.value, FiscalStatus.CANCELLED.value),
    ).fetchone()
    return _row_to_fiscal_document(row) if row else None


def list_fiscal_documents(
    conn: sqlite3.Connection,
    issuer: Optional[str] = None,
    status: Optional[FiscalStatus] = None,
    series: Optional[str] = None,
    search: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[FiscalDocument]:
    conditions = []
    params: List[Any] = []
    if issuer and issuer != "all":
        conditions.append("issuer = ?")
        params.append(issuer)
    if status:
        conditions.append("status = ?")
        params.append(status.value)
    if series:
        conditions.append("series = ?")
        params.append(series)
    # Whole days: start and end dates are both included, whatever their time
    if start:
        conditions.append("issue_date >= ?")
        params.append(datetime.combine(start.date(), time.min).isoformat())
    if end:
        conditions.append("issue_date < ?")
        params.append(datetime.combine(end.date() + timedelta(days=1), time.min).isoformat())
    if search:
        like = f"%{search.lower()}%"
        conditions.append(
            "(lower(code) LIKE ? OR lower(client_name) LIKE ? "
            "OR lower(house_name) LIKE ? OR lower(sale_code) LIKE ?)"
        )
        params.extend([like] * 4)

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM fiscal_documents {where_clause} ORDER BY issue_date DESC, id DESC",
        params,
    ).fetchall()
    return [_row_to_fiscal_document(row) for row in rows]
