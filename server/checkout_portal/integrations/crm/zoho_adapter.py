"""
Zoho CRM Adapter

Talks to the Zoho CRM v3 REST API for contact upserts, sales orders and
read-only lookups used by magic-link redemption.
"""

from typing import Any, Dict, List, Optional

import httpx

from checkout_portal.core.logging import get_logger

from .base import (
    ContactFields,
    CRMClient,
    CRMError,
    CRMType,
    RelatedEntity,
    SalesOrderRequest,
)

logger = get_logger(__name__)


def build_contact_payload(fields: ContactFields) -> Dict[str, Any]:
    """Build the Zoho ``Contacts`` record body from provisioning fields."""
    record = {
        "Last_Name": fields.last_name,
        "First_Name": fields.first_name,
        "Email": fields.email or "",
        "Phone": fields.phone or "",
        "Company": fields.company or "",
        "Mailing_Street": fields.street or "",
        "Mailing_City": fields.city or "",
        "Mailing_State": fields.state or "",
        "Mailing_Zip": fields.zip_code or "",
        "Mailing_Country": fields.country or "US",
        "Industry": fields.industry or "",
        "Lead_Source": fields.lead_source,
    }
    if fields.description:
        record["Description"] = fields.description
    return {"data": [record], "trigger": ["approval", "workflow"]}


def build_sales_order_payload(contact_id: str, order: SalesOrderRequest) -> Dict[str, Any]:
    """Build the Zoho ``Sales_Orders`` record body."""
    amount = float(order.amount)
    record: Dict[str, Any] = {
        "Contact_Name": {"id": contact_id},
        "Subject": order.subject,
        "Grand_Total": amount,
        "Sub_Total": amount,
        "Tax_Amount": 0,
        "Discount": 0,
        "Adjustment": 0,
        "Status": "Draft",
        "Currency": order.currency,
        "Terms_and_Conditions": "Payment processed via Stripe. Agreement signed via DocuSign.",
    }
    if order.description:
        record["Description"] = order.description
    if order.line_items:
        record["Ordered_Items"] = [
            {
                "Product_Name": {"name": item.name},
                "Quantity": item.quantity,
                "List_Price": float(item.unit_price),
                "Total": float(item.line_total),
                "Description": item.description or "",
            }
            for item in order.line_items
        ]
    return {"data": [record], "trigger": ["approval", "workflow"]}


class ZohoCRMAdapter(CRMClient):
    """Zoho CRM adapter."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **config
    ):
        """
        Initialize the Zoho CRM adapter.

        Args:
            base_url: CRM API root, e.g. https://www.zohoapis.com/crm/v3
            access_token: OAuth access token
            timeout_seconds: Total timeout applied to every request
            transport: Optional httpx transport (used by tests)
        """
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds, **config)
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_crm_type(self) -> CRMType:
        return CRMType.ZOHO

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Zoho-oauthtoken {self.access_token}"},
            )
        return self._client

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/Contacts/{contact_id}", operation="get_contact", allow_missing=True)
        if response is None:
            return None
        records = response.get("data") or []
        return records[0] if records else None

    async def create_contact(self, fields: ContactFields) -> str:
        response = await self._request("POST", "/Contacts", operation="create_contact", json=build_contact_payload(fields))
        return self._extract_record_id(response, "create_contact")

    async def update_contact(self, contact_id: str, fields: ContactFields) -> str:
        response = await self._request(
            "PUT", f"/Contacts/{contact_id}", operation="update_contact", json=build_contact_payload(fields)
        )
        self._extract_record_id(response, "update_contact")
        return contact_id

    async def create_sales_order(self, contact_id: str, order: SalesOrderRequest) -> str:
        response = await self._request(
            "POST",
            "/Sales_Orders",
            operation="create_sales_order",
            json=build_sales_order_payload(contact_id, order),
        )
        return self._extract_record_id(response, "create_sales_order")

    async def search_related(self, entity: RelatedEntity, criteria: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            f"/{entity.value}/search",
            operation=f"search_{entity.value.lower()}",
            params={"criteria": criteria},
            allow_missing=True,
        )
        if response is None:
            return []
        return list(response.get("data") or [])

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        allow_missing: bool = False,
        **kwargs,
    ) -> Optional[Dict[str, Any]]:
        if not self.access_token:
            raise CRMError("Zoho access token not configured", "NOT_CONFIGURED", "zoho")

        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("crm.request.timeout", operation=operation)
            raise CRMError(f"Zoho CRM timed out during {operation}", "TIMEOUT", "zoho") from exc
        except httpx.HTTPError as exc:
            logger.warning("crm.request.transport_error", operation=operation, error=str(exc))
            raise CRMError(f"Zoho CRM unreachable during {operation}", "TRANSPORT_ERROR", "zoho") from exc

        # Zoho answers searches without matches with 204 and no body
        if response.status_code == 204 or (allow_missing and response.status_code == 404):
            return None
        self._raise_for_status(response, operation)
        return response.json()

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.status_code in (200, 201, 202):
            return

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        message = body.get("message") if isinstance(body, dict) else None

        if response.status_code == 401:
            raise CRMError("Authentication failed - check access token", "AUTH_ERROR", "zoho", 401, body)
        if response.status_code == 403:
            raise CRMError("Insufficient permissions", "PERMISSION_ERROR", "zoho", 403, body)
        if response.status_code == 404:
            raise CRMError("Resource not found", "NOT_FOUND", "zoho", 404, body)
        if response.status_code == 429:
            raise CRMError("Rate limit exceeded", "RATE_LIMIT", "zoho", 429, body)
        if response.status_code >= 500:
            raise CRMError("Zoho CRM server error", "SERVER_ERROR", "zoho", response.status_code, body)
        raise CRMError(message or f"Zoho CRM error in {operation}", "API_ERROR", "zoho", response.status_code, body)

    def _extract_record_id(self, response: Optional[Dict[str, Any]], operation: str) -> str:
        records = (response or {}).get("data") or []
        if not records:
            raise CRMError(f"Empty response from Zoho CRM in {operation}", "EMPTY_RESPONSE", "zoho")
        record = records[0]
        if record.get("status") == "error":
            raise CRMError(
                record.get("message") or f"Zoho CRM rejected {operation}",
                record.get("code", "API_ERROR"),
                "zoho",
                provider_response=record,
            )
        record_id = (record.get("details") or {}).get("id")
        if not record_id:
            raise CRMError(f"No record id returned by Zoho CRM in {operation}", "NO_ID_RETURNED", "zoho")
        return str(record_id)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
