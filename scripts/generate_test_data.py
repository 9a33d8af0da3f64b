import os
import sys
from datetime import datetime, timedelta

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.db.database import get_connection, init_db
from src.errors import HouseUnavailableError
from src.fiscal.emission import EmissionService
from src.fiscal.gateway import SimulatedFiscalGateway
from src.logic.sales import create_sale, set_sale_status
from src.models.schemas import SaleStatus


def generate_sample_sales():
    """Seeds a few confirmed bookings and bills them through the sandbox gateway."""
    conn = get_connection()
    init_db(conn)

    base = datetime.now().replace(hour=14, minute=0, second=0, microsecond=0)
    data = [
        {
            "company": "exclusive",
            "client_id": "CLI-001",
            "client_name": "João Silva (Teste)",
            "client_cpf": "12345678900",
            "client_email": "joao.teste@example.com",
            "house_id": "CASA-01",
            "house_name": "Casa Pé na Areia",
            "check_in": base + timedelta(days=10),
            "check_out": base + timedelta(days=13),
            "number_of_guests": 4,
            "contract_value": 3000.0,
            "discount": 200.0,
            "housekeeper_value": 150.0,
            "concierge_value": 100.0,
        },
        {
            "company": "giogio",
            "client_id": "CLI-002",
            "client_name": "Maria Santos (Teste)",
            "client_cpf": "98765432100",
            "house_id": "CASA-02",
            "house_name": "Villa Coqueiros",
            "check_in": base + timedelta(days=20),
            "check_out": base + timedelta(days=27),
            "number_of_guests": 8,
            "contract_value": 9800.0,
            "housekeeper_value": 700.0,
            "concierge_value": 450.0,
            "additional_sales": {"supermarket": 120.0, "transfer": 80.0},
        },
    ]

    # One scripted failure shows the retry flow in db_viewer
    service = EmissionService(conn, SimulatedFiscalGateway(outcomes=["error"]))

    for payload in data:
        try:
            sale = create_sale(conn, payload)
        except HouseUnavailableError as e:
            print(f"Venda ignorada: {e}")
            continue
        set_sale_status(conn, sale.id, SaleStatus.CONFIRMED)

        document = service.create(sale.id)
        response = service.issue(document.id)
        print(
            f"{sale.code} -> NF-e {document.code}: "
            f"{'autorizada' if response.success else response.error}"
        )

    conn.close()


if __name__ == "__main__":
    generate_sample_sales()
