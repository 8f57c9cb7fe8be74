"""
Async client for the P4 Warehouse REST API.

Authentication is a static ApiKey header plus the tenant's Client name.
The API has no idempotency keys, so upsert() looks a record up by its
natural key first and then updates (PUT) or creates (POST).
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

RETRY_STATUSES = {429, 500, 502, 503, 504}
SINCE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class WarehouseError(RuntimeError):
    """Raised when a warehouse API request fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class _RetryableStatus(WarehouseError):
    pass


def _items(body: Any) -> List[Dict[str, Any]]:
    """Listing endpoints answer with a bare array or an envelope."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ("items", "value", "data", "results"):
            if isinstance(body.get(key), list):
                return body[key]
    return []


class WarehouseClient:
    """Thin async wrapper over the warehouse REST resources."""

    def __init__(
        self,
        api_key: str,
        client_name: str,
        *,
        base_url: str = "https://api.p4warehouse.com/",
        timeout: float = 120.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_name = client_name
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            transport=transport,
            headers={
                "ApiKey": api_key,
                "Client": client_name,
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> "WarehouseClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((_RetryableStatus, httpx.TransportError)),
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_exponential(multiplier=self._backoff_seconds, max=60),
                reraise=True,
            ):
                with attempt:
                    response = await self._http.request(method, path, **kwargs)
                    if response.status_code in RETRY_STATUSES:
                        logger.warning(
                            "Warehouse %s %s returned %s (attempt %d)",
                            method, path, response.status_code, attempt.retry_state.attempt_number,
                        )
                        raise _RetryableStatus(
                            f"{method} {path} failed: {response.status_code} {response.text}",
                            status_code=response.status_code,
                        )
                    return response
        except httpx.TransportError as exc:
            raise WarehouseError(f"{method} {path} failed: {exc}") from exc
        except _RetryableStatus as exc:
            raise WarehouseError(str(exc), status_code=exc.status_code) from exc

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 400:
            raise WarehouseError(
                f"{method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        return response.json() if response.content else None

    # ─── Clients ──────────────────────────────────────────────────────────────

    async def get_client_id(self) -> Optional[str]:
        """Id of the first warehouse client visible to this API key."""
        clients = _items(await self._send("GET", "clients"))
        if not clients or clients[0].get("id") is None:
            logger.warning("Could not retrieve client id from the warehouse API")
            return None
        client_id = str(clients[0]["id"])
        logger.info("Found warehouse client id %s", client_id)
        return client_id

    # ─── Generic resources ────────────────────────────────────────────────────

    async def find(self, resource: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        """First record of resource whose field equals value, or None."""
        response = await self._request("GET", resource, params={field: str(value)})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise WarehouseError(
                f"GET {resource} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        for item in _items(response.json() if response.content else None):
            # Some list endpoints ignore unknown filters; match explicitly
            found = item.get(field, item.get(field[:1].lower() + field[1:]))
            if found is not None and str(found) == str(value):
                return item
        return None

    async def exists(self, resource: str, field: str, value: Any) -> bool:
        return await self.find(resource, field, value) is not None

    async def upsert(
        self, resource: str, field: str, key: Any, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update the record with natural key `key`, or create it."""
        existing = await self.find(resource, field, key)
        if existing is not None and existing.get("id") is not None:
            logger.debug("Updating %s %s (id %s)", resource, key, existing["id"])
            body = await self._send("PUT", f"{resource}/{existing['id']}", json=payload)
        else:
            logger.debug("Creating %s %s", resource, key)
            body = await self._send("POST", resource, json=payload)
        return body or {}

    async def upsert_customer_batch(self, customers: List[Dict[str, Any]]) -> None:
        """Native batch upsert; the endpoint dedupes on CardCode itself."""
        await self._send("POST", "customers/batch", json=customers)

    # ─── Completed work (upload flows) ────────────────────────────────────────

    async def get_completed(self, resource: str, since: datetime) -> List[Dict[str, Any]]:
        """Items of resource completed at or after since."""
        body = await self._send(
            "GET", f"{resource}/completed", params={"since": since.strftime(SINCE_FORMAT)}
        )
        return _items(body)

    async def mark_processed(self, resource: str, item_id: str) -> None:
        await self._send("PATCH", f"{resource}/{item_id}/processed")
