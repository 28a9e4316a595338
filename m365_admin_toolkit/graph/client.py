"""
Async REST clients for Microsoft Graph, SharePoint Online and Azure Resource
Manager, sharing pagination, throttling, retry, and change-guardian enforcement.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncGenerator, Optional
from urllib.parse import urlparse

import httpx

from ..config import (
    ToolkitError,
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    ARM_BASE_URL,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    MAX_CONCURRENT_REQUESTS,
)
from ..safety.guardian import ChangeGuardian

logger = logging.getLogger("m365_admin_toolkit.graph")

RETRYABLE_STATUS = (429, 503, 504)


class GraphAPIError(ToolkitError):
    """Raised when a Microsoft API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str, code: str = ""):
        self.status_code = status_code
        self.url = url
        self.code = code
        self.message = message
        super().__init__(f"API Error {status_code} for {url}: {message}")

    @property
    def is_permission_error(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def hint(self) -> str:
        if self.status_code == 401:
            return "The token was rejected. Check the tenant, client ID and credential."
        if self.status_code == 403:
            return (
                "Access denied. The app may be missing an API permission, "
                "or admin consent wasn't granted."
            )
        return ""


def _error_details(response: httpx.Response) -> tuple[str, str]:
    """Pull (code, message) out of Graph, ARM or SharePoint error bodies."""
    try:
        body = response.json() if response.content else {}
    except ValueError:
        return "", response.text[:200]
    if not isinstance(body, dict):
        return "", response.text[:200]

    if "error" in body and isinstance(body["error"], dict):
        err = body["error"]
        return err.get("code", ""), err.get("message", "") or response.text[:200]

    # SharePoint REST, odata=nometadata / verbose
    sp_err = body.get("odata.error") or body.get("error")
    if isinstance(sp_err, dict):
        message = sp_err.get("message", "")
        if isinstance(message, dict):
            message = message.get("value", "")
        return sp_err.get("code", ""), message or response.text[:200]

    return "", response.text[:200]


def _retry_after(value: Optional[str], default: float) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class RestClient:
    """
    Base async client for Microsoft REST APIs.

    Subclasses pick the base URL, the next-link key and any extra headers.
    Every request is checked by the ChangeGuardian first; writes it declines
    come back as ``{"_dry_run": True}`` without touching the network.
    Throttled calls (429/503/504) are retried with exponential backoff that
    honours Retry-After, and a semaphore caps concurrent requests.
    """

    base_url: str = ""
    next_link_key: str = "@odata.nextLink"
    extra_headers: dict[str, str] = {}

    def __init__(
        self,
        access_token: str,
        guardian: ChangeGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self._transport = transport
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        headers.update(self.extra_headers)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENT_REQUESTS * 2,
                max_keepalive_connections=MAX_CONCURRENT_REQUESTS,
            ),
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug(f"{type(self).__name__} closed: {self.stats}")

    def _base_for(self, beta: bool) -> str:
        return self.base_url

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        if endpoint.startswith(("https://", "http://")):
            return endpoint
        return f"{self._base_for(beta)}/{endpoint.lstrip('/')}"

    def _prepare_params(self, url: str, params: Optional[dict]) -> Optional[dict]:
        return params

    # --- Reads ---

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """Execute a single GET request with retry/throttle handling."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)

        async with self._semaphore:
            return await self._execute_with_retry(
                "GET", url, params=self._prepare_params(url, params)
            )

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        """Collect every item of a paged collection. Pass skip_top for APIs that reject $top."""
        return [item async for item in self.get_all_pages_stream(endpoint, params, beta, top, skip_top=skip_top)]

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """Stream all pages of a paginated endpoint, one item at a time."""
        params = dict(params or {})
        if not skip_top and "$top" not in params:
            params["$top"] = str(min(top, DEFAULT_PAGE_SIZE) if top else DEFAULT_PAGE_SIZE)

        url = self._build_url(endpoint, beta=beta)
        request_params: Optional[dict] = self._prepare_params(url, params)
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            self.guardian.validate_request("GET", url)

            async with self._semaphore:
                data = await self._execute_with_retry("GET", url, params=request_params)

            for item in data.get("value", []):
                yield item

            # Next links carry every query parameter already
            url = data.get(self.next_link_key)
            request_params = None
            pages += 1

        if pages >= MAX_PAGES_PER_ENDPOINT:
            logger.warning(f"Stopped paging {endpoint} after {MAX_PAGES_PER_ENDPOINT} pages; results are truncated")

    # --- Writes ---

    async def post(self, endpoint: str, json_body: Optional[dict] = None, **kwargs) -> dict:
        return await self._write("POST", endpoint, json_body, **kwargs)

    async def patch(self, endpoint: str, json_body: Optional[dict] = None, **kwargs) -> dict:
        return await self._write("PATCH", endpoint, json_body, **kwargs)

    async def put(self, endpoint: str, json_body: Optional[dict] = None, **kwargs) -> dict:
        return await self._write("PUT", endpoint, json_body, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> dict:
        return await self._write("DELETE", endpoint, None, **kwargs)

    async def _write(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict],
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        beta: bool = False,
        guard_method: Optional[str] = None,
        content: Optional[str] = None,
    ) -> dict:
        url = self._build_url(endpoint, beta=beta)
        audit_body = json_body if content is None else {"content_length": len(content)}
        if not self.guardian.validate_request(guard_method or method, url, audit_body):
            return {"_dry_run": True}

        async with self._semaphore:
            return await self._execute_with_retry(
                method,
                url,
                params=self._prepare_params(url, params),
                json_body=json_body,
                headers=headers,
                content=content,
            )

    # --- Transport ---

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        headers: Optional[dict] = None,
        content: Optional[str] = None,
    ) -> dict:
        """Send a request, backing off on throttling and transient network failures."""
        backoff = INITIAL_BACKOFF_SECONDS
        attempt = 0

        while True:
            try:
                response = await self._send(
                    method, url, params=params, json_body=json_body, headers=headers, content=content
                )
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if attempt >= MAX_RETRIES:
                    raise
                logger.warning(f"{type(e).__name__} on {method} {url} (attempt {attempt + 1}/{MAX_RETRIES})")
                delay = backoff
            else:
                self._request_count += 1
                if response.status_code not in RETRYABLE_STATUS or attempt >= MAX_RETRIES:
                    return self._decode(method, url, response)
                self._throttle_count += 1
                delay = max(_retry_after(response.headers.get("Retry-After"), backoff), backoff)
                logger.warning(
                    f"{response.status_code} from {url}; waiting {delay:.1f}s "
                    f"before retry {attempt + 1}/{MAX_RETRIES}"
                )

            await asyncio.sleep(delay)
            backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
            attempt += 1

    def _decode(self, method: str, url: str, response: httpx.Response) -> dict:
        status = response.status_code
        if status == 204 or (status in (200, 201, 202) and not response.content.strip()):
            return {}
        if status in (200, 201, 202):
            try:
                return response.json()
            except ValueError:
                logger.debug(f"{status} response with non-JSON body from {url}")
                return {"_text": response.text}
        if status == 404 and method == "GET":
            logger.debug(f"Nothing at {url}")
            return {"value": [], "_not_found": True}

        code, message = _error_details(response)
        if status == 403:
            logger.warning(f"Forbidden: {method} {url}: {message}")
        raise GraphAPIError(status, message, url, code=code)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        headers: Optional[dict] = None,
        content: Optional[str] = None,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError(f"{type(self).__name__} not initialized. Use 'async with' context.")
        if content is not None:
            return await self._client.request(
                method, url, params=params, content=content.encode("utf-8"), headers=headers
            )
        return await self._client.request(method, url, params=params, json=json_body, headers=headers)

    @property
    def stats(self) -> dict:
        return {"total_requests": self._request_count, "throttle_events": self._throttle_count}


class GraphClient(RestClient):
    """Microsoft Graph client, v1.0 by default with optional beta endpoints."""

    extra_headers = {"ConsistencyLevel": "eventual"}  # Required for $count, $search

    def _base_for(self, beta: bool) -> str:
        return f"{GRAPH_BASE_URL}/{GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION}"

    async def resolve_site(self, site_url: str) -> dict:
        """Resolve a SharePoint site URL to its Graph site resource."""
        parsed = urlparse(site_url)
        if not parsed.hostname:
            raise GraphAPIError(400, f"Not an absolute site URL: {site_url}", site_url)
        path = parsed.path.rstrip("/")
        endpoint = f"sites/{parsed.hostname}:{path}" if path else f"sites/{parsed.hostname}"
        site = await self.get(endpoint)
        if site.get("_not_found"):
            raise GraphAPIError(404, f"Site not found: {site_url}", site_url, code="itemNotFound")
        return site


class SharePointClient(RestClient):
    """SharePoint Online REST client bound to one site or admin URL."""

    extra_headers = {
        "Accept": "application/json;odata=nometadata",
        "Content-Type": "application/json;odata=nometadata",
    }

    def __init__(self, site_url: str, access_token: str, guardian: ChangeGuardian, **kwargs):
        super().__init__(access_token, guardian, **kwargs)
        self.site_url = site_url.rstrip("/")
        self.base_url = f"{self.site_url}/_api"

    async def merge(self, endpoint: str, json_body: dict, **kwargs) -> dict:
        """Partial update via POST + X-HTTP-Method: MERGE."""
        headers = {"X-HTTP-Method": "MERGE", "IF-MATCH": "*"}
        return await self._write("POST", endpoint, json_body, headers=headers, guard_method="MERGE", **kwargs)


class ArmClient(RestClient):
    """Azure Resource Manager client; every call carries an api-version."""

    base_url = ARM_BASE_URL
    next_link_key = "nextLink"

    def __init__(self, access_token: str, guardian: ChangeGuardian, api_version: str, **kwargs):
        super().__init__(access_token, guardian, **kwargs)
        self.api_version = api_version

    def _prepare_params(self, url: str, params: Optional[dict]) -> Optional[dict]:
        if "api-version=" in url:
            return params
        merged = dict(params or {})
        merged.setdefault("api-version", self.api_version)
        return merged

    async def get_all_pages_stream(self, endpoint, params=None, beta=False, top=None, skip_top=True):
        # ARM list APIs reject $top on most resource types
        async for item in super().get_all_pages_stream(endpoint, params, beta, top, skip_top=True):
            yield item
