# wacommerce/bot/commerce.py

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from wacommerce.core.logging_config import trace_id_var

ApiResult = Dict[str, Any]


def _failure(error: str, **extra: Any) -> ApiResult:
    return {"success": False, "error": error, **extra}


class CommerceAPIClient:
    """
    Thin async client for the external commerce API (products, carts, orders,
    user verification and the admin back office).

    Every call is `POST <base_url>/<path>` with a JSON body. Transport and HTTP
    failures never raise: they come back as `{"success": False, "error": ...}`
    so the conversation engine can turn them into chat replies.
    """

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 25.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url or "http://commerce.invalid",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, path: str, payload: Dict[str, Any]) -> ApiResult:
        log = logger.bind(trace_id=trace_id_var.get(), service="CommerceAPI", endpoint=path)
        if not self.configured:
            log.error("Commerce API URL not configured.")
            return _failure("Commerce API not configured")

        log.debug("Calling commerce API...")
        try:
            response = await self._client.post(f"/{path}", json=payload)
        except httpx.TimeoutException:
            log.error("Timeout calling commerce API.")
            return _failure("Request timed out")
        except httpx.RequestError as e:
            log.error(f"HTTP request error calling commerce API: {e}")
            return _failure("Service unavailable")

        data: Any = {}
        try:
            data = response.json()
        except ValueError:
            log.error(f"Commerce API returned non-JSON response (Status: {response.status_code}): {response.text[:200]}")

        if not (200 <= response.status_code < 300):
            error = data.get("error") if isinstance(data, dict) else None
            log.warning(f"Commerce API error. Status={response.status_code}, Error='{error}'")
            return _failure(error or f"HTTP {response.status_code}", status_code=response.status_code)

        if not isinstance(data, dict):
            data = {"data": data}
        data.setdefault("success", True)
        return data

    # --- Users ---

    async def verify_user(self, phone_number: str) -> ApiResult:
        """-> {success, user: {id, name, role}}"""
        return await self._call("users/verify", {"phone_number": phone_number})

    async def register_user(self, phone_number: str, name: str, role: str = "customer") -> ApiResult:
        return await self._call("users/register", {"phone_number": phone_number, "name": name, "role": role})

    # --- Catalog ---

    async def list_products(self, merchant_id: str) -> ApiResult:
        """-> {success, products: {category: [{id, name, price, currency}]}}"""
        return await self._call("products/list", {"merchant_id": merchant_id})

    async def search_products(self, query: str, merchant_id: str) -> ApiResult:
        """-> {success, count, results: [{id, name, price, currency}]}"""
        return await self._call("products/search", {"query": query, "merchant_id": merchant_id})

    # --- Cart ---

    async def get_cart(self, phone_number: str, merchant_id: str) -> ApiResult:
        """-> {success, cart: {items: [{product_id, product_name, quantity, price, currency, subtotal}], total, currency}}"""
        return await self._call("cart/get", {"phone_number": phone_number, "merchant_id": merchant_id})

    async def add_to_cart(self, phone_number: str, merchant_id: str, product_id: str, quantity: int) -> ApiResult:
        """-> {success, items_count}"""
        return await self._call("cart/add", {
            "phone_number": phone_number, "merchant_id": merchant_id,
            "product_id": product_id, "quantity": quantity,
        })

    async def remove_from_cart(self, phone_number: str, merchant_id: str, product_id: str) -> ApiResult:
        return await self._call("cart/remove", {
            "phone_number": phone_number, "merchant_id": merchant_id, "product_id": product_id,
        })

    async def clear_cart(self, phone_number: str, merchant_id: str) -> ApiResult:
        return await self._call("cart/clear", {"phone_number": phone_number, "merchant_id": merchant_id})

    # --- Orders ---

    async def create_order(
        self,
        merchant_id: str,
        phone_number: str,
        items: List[Dict[str, Any]],
        total: float,
        currency: str,
        status: str = "pending",
    ) -> ApiResult:
        """-> {success, order_id}"""
        return await self._call("orders/create", {
            "merchant_id": merchant_id, "customer_phone": phone_number, "items": items,
            "total_amount": total, "currency": currency, "status": status,
        })

    async def list_merchant_orders(self, merchant_id: str, status: Optional[str] = None) -> ApiResult:
        """-> {success, count, orders: [...]}"""
        payload: Dict[str, Any] = {"merchant_id": merchant_id}
        if status:
            payload["status"] = status
        return await self._call("orders/list", payload)

    async def get_order(self, order_id: str) -> ApiResult:
        return await self._call("orders/get", {"order_id": order_id})

    # --- Admin back office ---

    async def list_merchants(self, status: str = "pending") -> ApiResult:
        """-> {success, data: [{id, business_name, owner_name, category}]}"""
        return await self._call("admin/merchants", {"status": status})

    async def approve_merchant(self, merchant_id: str, admin_phone: str) -> ApiResult:
        return await self._call("admin/merchants/approve", {"merchant_id": merchant_id, "admin_phone": admin_phone})

    async def reject_merchant(self, merchant_id: str, reason: str, admin_phone: str) -> ApiResult:
        return await self._call("admin/merchants/reject", {"merchant_id": merchant_id, "reason": reason, "admin_phone": admin_phone})

    async def suspend_merchant(self, merchant_id: str, reason: str, admin_phone: str) -> ApiResult:
        return await self._call("admin/merchants/suspend", {"merchant_id": merchant_id, "reason": reason, "admin_phone": admin_phone})

    async def get_system_analytics(self, admin_phone: str, timeframe: str = "today") -> ApiResult:
        return await self._call("admin/analytics", {"admin_phone": admin_phone, "timeframe": timeframe})

    async def get_system_alerts(self, admin_phone: str) -> ApiResult:
        return await self._call("admin/alerts", {"admin_phone": admin_phone})

    async def get_system_logs(self, admin_phone: str, kind: str = "all") -> ApiResult:
        return await self._call("admin/logs", {"admin_phone": admin_phone, "kind": kind})

    async def send_broadcast(self, admin_phone: str, message: str, audience: str = "all") -> ApiResult:
        return await self._call("admin/broadcast", {"admin_phone": admin_phone, "message": message, "audience": audience})
