"""HTTP client for the portrait API that keeps a LocalQuotaCache in step with the server."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
import logging

import httpx

from services.local_quota import LocalQuotaCache

logger = logging.getLogger(__name__)


class PortraitApiError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        code = detail.get("code") if isinstance(detail, dict) else None
        super().__init__(f"{status_code} {code or detail}")

    @property
    def code(self) -> Optional[str]:
        return self.detail.get("code") if isinstance(self.detail, dict) else None


class PortraitApiClient:
    def __init__(
        self,
        base_url: str,
        cache: Optional[LocalQuotaCache] = None,
        *,
        token: Optional[str] = None,
        session_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 120.0,
    ):
        self.cache = cache or LocalQuotaCache()
        self.authenticated = bool(token)
        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if session_id:
            headers["X-Session-Id"] = session_id
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport, timeout=timeout)

    async def __aenter__(self) -> "PortraitApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _sync(self, body: Dict[str, Any]) -> None:
        """Write server quota data into the local cache. Server values always win."""
        balance = body.get("balance")
        if isinstance(balance, dict) and "used_today" in balance:
            self.cache.sync_from_server(
                used_today=int(balance["used_today"]),
                daily_limit=balance.get("daily_free_limit"),
                server_date=balance.get("reset_date"),
            )
            return
        rate_limit = body.get("rate_limit")
        if isinstance(rate_limit, dict) and rate_limit.get("tier") == "anonymous":
            daily_limit = int(rate_limit["daily_limit"])
            self.cache.sync_from_server(
                used_today=daily_limit - int(rate_limit["daily_remaining"]),
                daily_limit=daily_limit,
            )

    def _sync_rejection(self, detail: Any) -> None:
        if not isinstance(detail, dict):
            return
        if detail.get("code") == "rate_limit_exceeded" and detail.get("daily_remaining") == 0:
            self.cache.sync_from_server(used_today=self.cache.daily_limit)
        elif detail.get("code") == "insufficient_credits" and detail.get("total_available") == 0:
            self.cache.sync_from_server(used_today=self.cache.daily_limit)

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self._client.request(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text}
        if response.is_error:
            detail = body.get("detail") if isinstance(body, dict) else body
            self._sync_rejection(detail)
            raise PortraitApiError(response.status_code, detail)
        self._sync(body)
        return body

    def _offline(self, exc: Exception) -> Dict[str, Any]:
        logger.warning("Portrait API unreachable, showing cached quota: %s", exc)
        return {"offline": True, "local": self.cache.check().as_dict()}

    async def rate_limit_status(self) -> Dict[str, Any]:
        try:
            return await self._request("GET", "/generation/rate-limit")
        except httpx.TransportError as exc:
            return self._offline(exc)

    async def credits(self) -> Dict[str, Any]:
        try:
            return await self._request("GET", "/billing/credits")
        except httpx.TransportError as exc:
            return self._offline(exc)

    async def start_generation(
        self,
        *,
        image_data: str,
        prompt: str,
        styles: List[str],
        image_type: str = "image/jpeg",
        client_request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Generate a portrait.

        Anonymous callers are refused locally once the cached free counter is exhausted;
        signed-in callers may still hold paid credits, so only the server decides for them.
        """
        local = self.cache.check()
        if not self.authenticated and not local.can_proceed:
            raise PortraitApiError(
                429,
                {
                    "code": "rate_limit_exceeded",
                    "message": "Daily free limit reached.",
                    "daily_remaining": 0,
                    "reset_at": local.resets_at.isoformat(),
                    "local": True,
                },
            )
        payload: Dict[str, Any] = {
            "image_data": image_data,
            "image_type": image_type,
            "prompt": prompt,
            "styles": styles,
        }
        if client_request_id:
            payload["client_request_id"] = client_request_id
        return await self._request("POST", "/generation/portraits", json=payload)
