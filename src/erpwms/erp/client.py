"""
Async client for the SAP Business One Service Layer.

Session handling:
  POST Login with the company database and credentials; the Service Layer
  answers with B1SESSION / ROUTEID cookies which the httpx cookie jar sends
  back on every request. Sessions expire server-side after 30 minutes of
  inactivity, so the client logs in again once its session is older than
  SESSION_TIMEOUT, and whenever a request comes back 401.

Retries:
  401, 429, 5xx responses and transport errors are retried with exponential
  backoff (tenacity). Anything else non-2xx raises ServiceLayerError.

SQL queries:
  The Service Layer only runs SQL that has been registered under a code in
  SQLQueries. Each query text gets a stable code derived from its MD5, is
  registered on first use (404 on List) and then listed. Results are paged
  through odata.nextLink.
"""
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

SESSION_TIMEOUT = timedelta(minutes=25)
RETRY_STATUSES = {401, 429, 500, 502, 503, 504}
QUERY_CODE_PREFIX = "P4W_"


class ServiceLayerError(RuntimeError):
    """Raised when a Service Layer request fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionError(ServiceLayerError):
    """Raised when login is rejected."""


class _RetryableStatus(ServiceLayerError):
    pass


def query_code(sql: str) -> str:
    """Stable SQLQueries code for a query text."""
    return QUERY_CODE_PREFIX + hashlib.md5(sql.encode("utf-8")).hexdigest()[:8].upper()


def _next_link(body: Dict[str, Any]) -> Optional[str]:
    return body.get("odata.nextLink") or body.get("@odata.nextLink")


class ServiceLayerClient:
    """
    Thin async wrapper over the Service Layer REST API.

    Use as an async context manager, or call aclose() when done.
    """

    def __init__(
        self,
        base_url: str,
        company_db: str,
        user_name: str,
        password: str,
        *,
        timeout: float = 300.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        verify: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=datetime.utcnow,
    ):
        """
        Args:
            base_url: Service Layer root, e.g. https://sap:50000/b1s/v1
            transport: Optional httpx transport (MockTransport in tests).
            clock: Returns naive UTC now; used for session age.
        """
        self.company_db = company_db
        self._user_name = user_name
        self._password = password
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._clock = clock
        self._session_id: Optional[str] = None
        self._logged_in_at: Optional[datetime] = None
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "ServiceLayerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Session ──────────────────────────────────────────────────────────────

    async def login(self) -> None:
        """
        Open a new Service Layer session.

        Raises:
            SessionError: if the credentials are rejected or the server is unreachable.
        """
        logger.info("Logging into Service Layer for company %s", self.company_db)
        try:
            response = await self._http.post(
                "Login",
                json={
                    "CompanyDB": self.company_db,
                    "UserName": self._user_name,
                    "Password": self._password,
                },
            )
        except httpx.HTTPError as exc:
            raise SessionError(f"Service Layer login failed: {exc}") from exc
        if response.status_code >= 400:
            raise SessionError(
                f"Service Layer login failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        body = response.json() if response.content else {}
        self._session_id = body.get("SessionId") or self._http.cookies.get("B1SESSION")
        self._logged_in_at = self._clock()
        logger.info("Logged into Service Layer")

    @property
    def has_session(self) -> bool:
        return self._session_id is not None

    async def _ensure_session(self) -> None:
        if (
            self._session_id is None
            or self._logged_in_at is None
            or self._clock() - self._logged_in_at > SESSION_TIMEOUT
        ):
            await self.login()

    # ─── Transport ────────────────────────────────────────────────────────────

    def _relative(self, link: str) -> str:
        """Turn a nextLink (absolute, rooted or relative) into a request path."""
        if link.startswith("http"):
            return link
        link = link.lstrip("/")
        base_path = self._http.base_url.path.strip("/")
        if base_path and link.startswith(base_path + "/"):
            link = link[len(base_path) + 1:]
        return link

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request with session refresh and retry; returns any non-retryable response."""
        await self._ensure_session()
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
                            "Service Layer %s %s returned %s (attempt %d)",
                            method, path, response.status_code, attempt.retry_state.attempt_number,
                        )
                        if response.status_code == 401:
                            await self.login()
                        raise _RetryableStatus(
                            f"{method} {path} failed: {response.status_code} {response.text}",
                            status_code=response.status_code,
                        )
                    return response
        except httpx.TransportError as exc:
            raise ServiceLayerError(f"{method} {path} failed: {exc}") from exc
        except _RetryableStatus as exc:
            raise ServiceLayerError(str(exc), status_code=exc.status_code) from exc

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ServiceLayerError(
                f"{method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )

    async def get(self, path: str) -> Dict[str, Any]:
        response = await self._request("GET", path)
        self._raise_for_status("GET", path, response)
        return response.json()

    async def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a document; returns the parsed response body ({} when empty)."""
        response = await self._request("POST", path, json=payload)
        self._raise_for_status("POST", path, response)
        return response.json() if response.content else {}

    async def iter_pages(self, path: str) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield the value array of each OData page, following nextLink."""
        next_path: Optional[str] = path
        while next_path:
            body = await self.get(next_path)
            yield body.get("value", [])
            link = _next_link(body)
            next_path = self._relative(link) if link else None

    # ─── SQL queries ──────────────────────────────────────────────────────────

    async def _register_query(self, code: str, sql: str) -> None:
        response = await self._request(
            "POST",
            "SQLQueries",
            json={"SqlCode": code, "SqlText": sql, "SqlName": f"P4W Integration Query {code}"},
        )
        # 409: registered concurrently by another run
        if response.status_code >= 400 and response.status_code != 409:
            self._raise_for_status("POST", "SQLQueries", response)

    async def iter_sql_pages(self, sql: str) -> AsyncIterator[List[Dict[str, Any]]]:
        """Run a SQL query through SQLQueries and yield its result pages."""
        code = query_code(sql)
        path = f"SQLQueries('{code}')/List"
        response = await self._request("POST", path, json={})
        if response.status_code == 404:
            logger.debug("Registering SQL query %s", code)
            await self._register_query(code, sql)
            response = await self._request("POST", path, json={})
        self._raise_for_status("POST", path, response)

        while True:
            body = response.json()
            yield body.get("value", [])
            link = _next_link(body)
            if not link:
                return
            next_path = self._relative(link)
            response = await self._request("POST", next_path, json={})
            self._raise_for_status("POST", next_path, response)

    async def execute_sql(self, sql: str) -> List[Dict[str, Any]]:
        """Run a SQL query and return all rows."""
        rows: List[Dict[str, Any]] = []
        async for page in self.iter_sql_pages(sql):
            rows.extend(page)
        return rows

    # ─── Master data helpers ──────────────────────────────────────────────────

    async def get_item_groups(self) -> Dict[int, str]:
        """
        Map item group number → group name.

        Returns whatever was loaded if a later page fails; callers fall back
        to the numeric code for missing groups.
        """
        mapping: Dict[int, str] = {}
        try:
            async for page in self.iter_pages("ItemGroups?$select=Number,GroupName"):
                for group in page:
                    number = group.get("Number")
                    name = group.get("GroupName")
                    if number is not None and name:
                        mapping[int(number)] = str(name)
        except ServiceLayerError as exc:
            logger.warning(
                "Loaded %d item groups before failure: %s; using group codes for the rest",
                len(mapping), exc,
            )
        return mapping

    # ─── Attachments ──────────────────────────────────────────────────────────

    async def get_attachment(self, absolute_entry: int) -> Optional[Dict[str, Any]]:
        """Attachment metadata from Attachments2, or None if it doesn't exist."""
        path = f"Attachments2({absolute_entry})"
        response = await self._request("GET", path)
        if response.status_code == 404:
            logger.warning("Attachment %s not found", absolute_entry)
            return None
        self._raise_for_status("GET", path, response)
        return response.json()

    async def download_attachment(self, file_path: str) -> Optional[bytes]:
        """Download an attachment's bytes by stored path or absolute URL."""
        if not file_path:
            return None
        if file_path.startswith("http"):
            path = file_path
        else:
            path = f"Attachments2/$value?filename={quote(file_path)}"
        response = await self._request("GET", path)
        if response.status_code == 404:
            logger.warning("Attachment file not found at %s", file_path)
            return None
        self._raise_for_status("GET", path, response)
        return response.content
