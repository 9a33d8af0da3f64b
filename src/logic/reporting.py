import os
import sqlite3
from datetime import datetime
from typing import Optional

from src.config import Config
from src.db.database import list_fiscal_documents
from src.models.schemas import FiscalReport, FiscalStatus, SaleStats, SaleStatus


def get_sale_stats(conn: sqlite3.Connection) -> SaleStats:
    """
    Aggregates the sales book.
    Commissions include the additional sales, which are supplier commissions.
    """
    cur = conn.cursor()
    cur.execute("""
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(total_revenue), 0) AS total_revenue,
            COALESCE(SUM(sales_commission + total_additional_sales), 0) AS total_commissions,
            COALESCE(SUM(contribution_margin), 0) AS total_margin
        FROM sales
    """)
    totals = cur.fetchone()

    cur.execute("SELECT status, COUNT(*) AS n FROM sales GROUP BY status")
    per_status = {row["status"]: row["n"] for row in cur.fetchall()}

    total = totals["total"] or 0
    total_revenue = totals["total_revenue"] or 0.0

    return SaleStats(
        total=total,
        pending=per_status.get(SaleStatus.PENDING.value, 0),
        confirmed=per_status.get(SaleStatus.CONFIRMED.value, 0),
        completed=per_status.get(SaleStatus.COMPLETED.value, 0),
        cancelled=per_status.get(SaleStatus.CANCELLED.value, 0),
        total_revenue=total_revenue,
        average_ticket=total_revenue / total if total > 0 else 0.0,
        total_commissions=totals["total_commissions"] or 0.0,
        total_margin=totals["total_margin"] or 0.0,
    )


def get_fiscal_report(
    conn: sqlite3.Connection, issuer: str, start: datetime, end: datetime
) -> FiscalReport:
    """Summarizes the documents of an issuer whose issue date falls in [start, end]."""
    documents = list_fiscal_documents(conn, issuer=issuer, start=start, end=end)

    total_issued = len(documents)
    total_authorized = sum(1 for d in documents if d.status == FiscalStatus.AUTHORIZED)

    return FiscalReport(
        issuer=issuer,
        period=f"{start.strftime('%d/%m/%Y')} a {end.strftime('%d/%m/%Y')}",
        total_issued=total_issued,
        total_authorized=total_authorized,
        total_rejected=sum(1 for d in documents if d.status == FiscalStatus.REJECTED),
        total_cancelled=sum(1 for d in documents if d.status == FiscalStatus.CANCELLED),
        total_value=sum(d.total_value for d in documents),
        tax_collected=sum(d.tax_value for d in documents),
        success_rate=(total_authorized / total_issued) * 100 if total_issued > 0 else 0.0,
    )


def generate_fiscal_report(
    conn: sqlite3.Connection,
    issuer: str,
    start: datetime,
    end: datetime,
    reports_dir: Optional[str] = None,
) -> FiscalReport:
    """
    Prints the fiscal report of an issuer and appends it to a .txt file.
    """
    report = get_fiscal_report(conn, issuer, start, end)

    report_lines = []
    report_lines.append("\n" + "=" * 50)
    report_lines.append("         RELATORIO DE NOTAS FISCAIS (NF-e)")
    report_lines.append("=" * 50)
    report_lines.append(f"Empresa: {report.issuer}")
    report_lines.append(f"Periodo: {report.period}")
    report_lines.append("-" * 50)
    report_lines.append(f"{'Notas Emitidas:':<25} {report.total_issued}")
    report_lines.append(f"{'Autorizadas:':<25} {report.total_authorized}")
    report_lines.append(f"{'Rejeitadas:':<25} {report.total_rejected}")
    report_lines.append(f"{'Canceladas:':<25} {report.total_cancelled}")
    report_lines.append(f"{'Valor Total:':<25} R$ {report.total_value:,.2f}")
    report_lines.append(f"{'Impostos:':<25} R$ {report.tax_collected:,.2f}")
    report_lines.append(f"{'Taxa de Sucesso:':<25} {report.success_rate:.1f}%")
    report_lines.append("=" * 50 + "\n")

    full_report = "\n".join(report_lines)
    print(full_report)

    reports_dir = reports_dir or Config.REPORTS_DIR
    today_str = datetime.now().strftime("%Y-%m-%d")
    report_path = os.path.join(reports_dir, f"fiscal_report_{issuer}_{today_str}.txt")

    try:
        os.makedirs(reports_dir, exist_ok=True)
        with open(report_path, "a", encoding="utf-8") as f:
            f.write(full_report)
        print(f"Relatorio salvo em: {report_path}")
    except OSError as e:
        print(f"Erro ao salvar relatorio em arquivo: {e}")

    return report
