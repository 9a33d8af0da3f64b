import os
import sys

# Adiciona o diretório raiz do projeto ao PYTHONPATH para ele achar a pasta 'src'
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.db.database import (
    get_connection,
    get_sequence_counter,
    list_fiscal_documents,
    list_sales,
)
from src.logic.reporting import get_sale_stats
from src.logic.sales import SALE_CODE_ISSUER, SALE_CODE_PREFIX


def print_recent_sales(limit=5):
    """Lista as últimas vendas com seus valores calculados."""
    conn = get_connection()
    sales = list_sales(conn)[:limit]

    print("-" * 80)
    print(f"{'CODE':<8} | {'STATUS':<10} | {'HOUSE':<18} | {'NIGHTS':<6} | {'NET':<11} | {'MARGIN'}")
    print("-" * 80)

    if not sales:
        print("Nenhuma venda encontrada no banco.")

    for sale in sales:
        print(
            f"{sale.code:<8} | {sale.status.value:<10} | {sale.house_name[:18]:<18} | "
            f"{sale.number_of_nights:<6} | R$ {sale.net_value:<8.2f} | R$ {sale.contribution_margin:.2f}"
        )

    print("-" * 80)
    conn.close()


def print_recent_documents(limit=5):
    """Lista as últimas NF-es e o estado de emissão."""
    conn = get_connection()
    documents = list_fiscal_documents(conn)[:limit]

    print("-" * 80)
    print(f"{'CODE':<12} | {'STATUS':<10} | {'TOTAL':<11} | {'TRIES':<5} | {'ACCESS KEY'}")
    print("-" * 80)

    if not documents:
        print("Nenhuma NF-e encontrada no banco.")

    for doc in documents:
        print(
            f"{doc.code:<12} | {doc.status.value:<10} | R$ {doc.total_value:<8.2f} | "
            f"{doc.failure_attempts:<5} | {doc.access_key or '-'}"
        )

    print("-" * 80)
    conn.close()


def db_stats():
    """Traz uma contagem rápida de volume do banco."""
    conn = get_connection()
    stats = get_sale_stats(conn)
    d_count = conn.execute("SELECT COUNT(*) FROM fiscal_documents").fetchone()[0]
    sale_counter = get_sequence_counter(conn, SALE_CODE_ISSUER, SALE_CODE_PREFIX)
    last_code = sale_counter.last_number if sale_counter else 0

    print(f"📊 Resumo do Banco de Dados:")
    print(f"   🏠 Vendas:      {stats.total} (confirmadas: {stats.confirmed}, canceladas: {stats.cancelled})")
    print(f"   💰 Faturamento: R$ {stats.total_revenue:,.2f}")
    print(f"   🔢 Último nº de venda: {last_code}")
    print(f"   🧾 NF-es:       {d_count}\n")
    conn.close()


if __name__ == "__main__":
    print("\n--- VISUALIZADOR RÁPIDO DO FATURAMENTO ---")
    db_stats()

    print("Últimas 5 vendas (Ordem Decrescente):")
    print_recent_sales(5)

    print("Últimas 5 NF-es (Ordem Decrescente):")
    print_recent_documents(5)
