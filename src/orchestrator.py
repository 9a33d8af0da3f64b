import logging
import schedule
import time
import sys
import os
from datetime import datetime

# Garante que o diretório raiz está no path para importar src
sys.path.append(os.getcwd())

from src.db.database import get_connection, init_db
from src.config import Config
from src.errors import BillingError
from src.fiscal.emission import EmissionService
from src.fiscal.gateway import FiscalGateway, SimulatedFiscalGateway
from src.logic.reporting import generate_fiscal_report
from src.models.schemas import FiscalStatus


def build_gateway() -> FiscalGateway:
    """HTTP gateway when one is configured, sandbox simulation otherwise."""
    if Config.FISCAL_GATEWAY_URL and Config.FISCAL_GATEWAY_TOKEN:
        from src.fiscal.client import HttpFiscalGateway

        return HttpFiscalGateway()
    return SimulatedFiscalGateway()


def issue_outstanding_documents(service: EmissionService) -> dict:
    """
    Issues pending documents of auto-issue issuers and retries documents in
    error that are still under MAX_FAILURE_ATTEMPTS. Each one is a plain,
    explicit issue() call.
    """
    summary = {"issued": 0, "failed": 0, "skipped": 0}

    candidates = []
    for document in service.list_documents(status=FiscalStatus.PENDING):
        if service.get_issuer_config(document.issuer).auto_issue:
            candidates.append(document)
    for document in service.list_documents(status=FiscalStatus.ERROR):
        if document.failure_attempts < Config.MAX_FAILURE_ATTEMPTS:
            candidates.append(document)
        else:
            summary["skipped"] += 1

    for document in candidates:
        try:
            response = service.issue(document.id)
        except BillingError as e:
            print(f"Documento {document.code} ignorado: {e}")
            summary["skipped"] += 1
            continue

        if response.success:
            summary["issued"] += 1
        else:
            summary["failed"] += 1

    return summary


def run_daily_job():
    """
    Orchestrates the daily billing job:
    1. Issue outstanding fiscal documents
    2. Print the monthly fiscal report of each issuer
    """
    print(f"[{datetime.now().isoformat()}] Starting daily scheduled job...")

    try:
        with get_connection() as conn:
            init_db(conn)
            service = EmissionService(conn, build_gateway())

            print("--- Step 1: Issuing outstanding fiscal documents ---")
            summary = issue_outstanding_documents(service)
            print(
                f"Emitidas: {summary['issued']} | Falhas: {summary['failed']} | "
                f"Ignoradas: {summary['skipped']}"
            )

            print("\n--- Step 2: Fiscal reports ---")
            end = datetime.now()
            start = end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            issuers = {d.issuer for d in service.list_documents()}
            for issuer in sorted(issuers):
                generate_fiscal_report(conn, issuer, start, end)

        print(f"\n[{datetime.now().isoformat()}] Daily job completed successfully.")
    except Exception as e:
        print(f"[{datetime.now().isoformat()}] CRITICAL: Daily job failed: {e}")


def main():
    print("--- BILLING ORCHESTRATOR SERVER ---")
    print(f"Environment: {Config.ENVIRONMENT.upper()}")

    run_time = Config.get_schedule_time()
    print(f"Scheduled execution time: {run_time}")

    schedule.every().day.at(run_time).do(run_daily_job)

    print(f"Server is running. Waiting for {run_time}...")

    while True:
        schedule.run_pending()
        time.sleep(1)


if __name__ == "__main__":
    logging.basicConfig(
        level=Config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    delay = Config.get_startup_delay()
    if delay > 0:
        print(
            f"Aguardando {delay} segundos para iniciar (Ambiente: {Config.ENVIRONMENT.upper()})..."
        )
        time.sleep(delay)

    # If passed '--now' arg, run immediately
    if len(sys.argv) > 1 and sys.argv[1] == "--now":
        run_daily_job()
    else:
        main()
