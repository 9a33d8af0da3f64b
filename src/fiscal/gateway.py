"""
Fiscal authority (SEFAZ) gateway contract.

The emission state machine only talks to a FiscalGateway. Production code
plugs in HttpFiscalGateway (src/fiscal/client.py); tests and the sandbox
use SimulatedFiscalGateway, which is fully deterministic.
"""
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Union

from src.config import Config
from src.fiscal.access_key import generate_access_key
from src.models.schemas import EmissionRequest, EmissionResponse

NFE_NAMESPACE = "http://www.portalfiscal.inf.br/nfe"

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_REJECTED = "rejected"

Outcome = Union[str, Exception]


class FiscalGateway(ABC):
    @abstractmethod
    def emit(self, request: EmissionRequest) -> EmissionResponse:
        """
        Submits one document to the authority. Failures the authority
        reports come back as success=False; transport problems may raise.
        """


def format_authority_number(series: str, number: int) -> str:
    return f"{series}{number:09d}"


def build_document_xml(request: EmissionRequest, access_key: str) -> str:
    """Renders the NF-e body for a rental service line."""
    ET.register_namespace("", NFE_NAMESPACE)
    ns = f"{{{NFE_NAMESPACE}}}"

    root = ET.Element(f"{ns}NFe")
    inf = ET.SubElement(root, f"{ns}infNFe", Id=f"NFe{access_key}")

    ide = ET.SubElement(inf, f"{ns}ide")
    ET.SubElement(ide, f"{ns}cUF").text = Config.FISCAL_REGION_CODE
    ET.SubElement(ide, f"{ns}cNF").text = format_authority_number(
        request.series, request.number
    )
    ET.SubElement(ide, f"{ns}natOp").text = "Locação de Imóvel"
    ET.SubElement(ide, f"{ns}mod").text = Config.FISCAL_DOCUMENT_MODEL
    ET.SubElement(ide, f"{ns}serie").text = request.series
    ET.SubElement(ide, f"{ns}nNF").text = str(request.number)
    ET.SubElement(ide, f"{ns}dEmi").text = request.issue_date_iso[:10]

    emit = ET.SubElement(inf, f"{ns}emit")
    ET.SubElement(emit, f"{ns}CNPJ").text = request.issuer_tax_id

    dest = ET.SubElement(inf, f"{ns}dest")
    ET.SubElement(dest, f"{ns}CPF").text = request.recipient_tax_id
    ET.SubElement(dest, f"{ns}xNome").text = request.recipient_name

    det = ET.SubElement(inf, f"{ns}det", nItem="1")
    prod = ET.SubElement(det, f"{ns}prod")
    ET.SubElement(prod, f"{ns}xDesc").text = request.description
    ET.SubElement(prod, f"{ns}qCom").text = str(request.quantity)
    ET.SubElement(prod, f"{ns}vUnCom").text = f"{request.unit_value:.2f}"
    ET.SubElement(prod, f"{ns}vProd").text = f"{request.total_value:.2f}"

    total = ET.SubElement(inf, f"{ns}total")
    icms = ET.SubElement(total, f"{ns}ICMSTot")
    ET.SubElement(icms, f"{ns}vBC").text = f"{request.total_value - request.icms_value:.2f}"
    ET.SubElement(icms, f"{ns}pICMS").text = f"{request.icms_rate:.2f}"
    ET.SubElement(icms, f"{ns}vICMS").text = f"{request.icms_value:.2f}"
    ET.SubElement(icms, f"{ns}vNF").text = f"{request.total_value:.2f}"

    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}'


class SimulatedFiscalGateway(FiscalGateway):
    """
    Sandbox stand-in for the authority.

    Outcomes are scripted and consumed in order ("success", "error",
    "rejected", or an exception instance to raise); once the script runs out
    every call succeeds. Every request received is kept in `calls`.
    """

    PDF_BASE_URL = "https://sandbox.nfe.local/danfe"

    def __init__(self, outcomes: Optional[Iterable[Outcome]] = None):
        self._outcomes: List[Outcome] = list(outcomes or [])
        self.calls: List[EmissionRequest] = []

    def emit(self, request: EmissionRequest) -> EmissionResponse:
        self.calls.append(request)
        outcome = self._outcomes.pop(0) if self._outcomes else OUTCOME_SUCCESS

        if isinstance(outcome, Exception):
            raise outcome

        if outcome == OUTCOME_ERROR:
            return EmissionResponse(
                success=False,
                error="Erro simulado na SEFAZ: Dados inconsistentes",
            )

        if outcome == OUTCOME_REJECTED:
            return EmissionResponse(
                success=False,
                rejected=True,
                error="Rejeição simulada: CNPJ do emitente inválido",
            )

        if outcome != OUTCOME_SUCCESS:
            raise ValueError(f"Unknown simulated outcome: {outcome!r}")

        access_key = request.access_key or generate_access_key(
            request.issuer_tax_id,
            request.series,
            request.number,
            datetime.fromisoformat(request.issue_date_iso),
        )
        return EmissionResponse(
            success=True,
            authority_number=format_authority_number(request.series, request.number),
            access_key=access_key,
            document_xml=build_document_xml(request, access_key),
            document_pdf_url=f"{self.PDF_BASE_URL}/{access_key}.pdf",
        )
