"""
Creates the billing tables (sales, sequence_counters, issuer_configs,
fiscal_documents) in the database of the current ENVIRONMENT.
Safe to run again: existing tables and rows are kept.
"""
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.config import Config
from src.db.database import get_connection, init_db

BILLING_TABLES = ("sales", "sequence_counters", "issuer_configs", "fiscal_documents")


def create_billing_tables(db_path: str = Config.DB_NAME) -> dict:
    """Runs init_db and returns the row count of each billing table."""
    conn = get_connection(db_path)
    try:
        init_db(conn)
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in BILLING_TABLES
        }
    finally:
        conn.close()


if __name__ == "__main__":
    print("--- BILLING DATABASE SETUP ---")
    print(f"Ambiente: {Config.ENVIRONMENT.upper()}")
    print(f"Banco: {Config.DB_NAME}")

    try:
        counts = create_billing_tables()
    except Exception as e:
        print(f"Falha ao criar as tabelas de faturamento: {e}")
        sys.exit(1)

    for table, rows in counts.items():
        print(f"   {table:<18} {rows} registros")
    print("Tabelas de vendas, numeração e NF-e prontas.")
