import requests
from typing import Dict, Any, Optional

from src.config import Config
from src.errors import FiscalGatewayError
from src.fiscal.gateway import FiscalGateway
from src.models.schemas import EmissionRequest, EmissionResponse


class HttpFiscalGateway(FiscalGateway):
    """
    Posts emission requests to an HTTP bridge in front of the authority.

    The bridge answers with the EmissionResponse fields as JSON; a
    status of "rejected" marks a definitive refusal.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url or Config.FISCAL_GATEWAY_URL
        self.api_token = api_token or Config.FISCAL_GATEWAY_TOKEN
        self.timeout = timeout

        if not self.base_url or not self.api_token:
            raise ValueError(
                "FISCAL_GATEWAY_URL and FISCAL_GATEWAY_TOKEN need to be provided."
            )

    def get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        headers = self.get_headers()

        if "headers" in kwargs:
            headers.update(kwargs.pop("headers"))

        try:
            response = requests.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise FiscalGatewayError(f"Fiscal gateway unreachable: {e}") from e

        # 422 carries a structured rejection body
        if response.status_code != 422:
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise FiscalGatewayError(
                    f"Fiscal gateway answered {response.status_code}"
                ) from e

        return response.json()

    def emit(self, request: EmissionRequest) -> EmissionResponse:
        data = self._request("POST", "/nfe/emit", json=request.model_dump())
        rejected = data.get("status") == "rejected" or bool(data.get("rejected"))
        return EmissionResponse(
            success=bool(data.get("success")) and not rejected,
            authority_number=data.get("authority_number"),
            access_key=data.get("access_key"),
            document_xml=data.get("document_xml"),
            document_pdf_url=data.get("document_pdf_url"),
            error=data.get("error"),
            rejected=rejected,
        )
