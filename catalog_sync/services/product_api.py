from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Protocol, Sequence

import httpx
import structlog
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt,
    wait_exponential,
)

from catalog_sync.config import settings
from catalog_sync.exceptions import (
    AuthError, PermanentError, ProductNotFoundError,
    RateLimitError, TransientError,
)

log = structlog.get_logger(__name__)


@dataclass
class ApiResponse:
    payload: bytes
    status: int = 200


@dataclass
class ProductItem:
    external_id: str
    price: Optional[Decimal] = None
    currency: str = "USD"
    availability_type: str = ""
    availability_message: str = ""
    title: Optional[str] = None
    description: Optional[str] = None
    features: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    browse_nodes: List[str] = field(default_factory=list)
    variations: List[str] = field(default_factory=list)
    parent_external_id: Optional[str] = None


class ProductApiClient(Protocol):
    async def get_item(
        self,
        external_id: str,
        region: str,
        resources: Sequence[str],
        endpoint: str = "items",
    ) -> ApiResponse: ...

    def parse_item(self, payload: bytes) -> ProductItem: ...


def _text(data: dict, name: str) -> Optional[str]:
    value = data.get(name)
    if value is not None and not isinstance(value, str):
        raise PermanentError(f"Product payload field {name} is not text", {name: repr(value)})
    return value


def _text_list(data: dict, name: str) -> List[str]:
    value = data.get(name) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PermanentError(f"Product payload field {name} is not a list of text", {name: repr(value)})
    return list(value)


def parse_item(payload: bytes) -> ProductItem:
    """Decode a product payload; any shape mismatch is a PermanentError."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise PermanentError("Malformed product payload", {"error": str(exc)}) from exc
    if not isinstance(data, dict) or not data.get("external_id"):
        raise PermanentError("Product payload has no external_id")
    external_id = _text(data, "external_id")

    price = data.get("price")
    if price is not None:
        if isinstance(price, bool) or not isinstance(price, (str, int, float)):
            raise PermanentError("Product payload has an invalid price", {"price": repr(price)})
        try:
            price = Decimal(str(price))
        except InvalidOperation as exc:
            raise PermanentError("Product payload has an invalid price", {"price": price}) from exc
        if not price.is_finite():
            raise PermanentError("Product payload has an invalid price", {"price": str(price)})

    availability = data.get("availability") or {}
    if isinstance(availability, str):
        availability = {"type": availability}
    if not isinstance(availability, dict):
        raise PermanentError(
            "Product payload has an invalid availability", {"availability": repr(availability)}
        )
    return ProductItem(
        external_id=external_id,
        price=price,
        currency=_text(data, "currency") or "USD",
        availability_type=str(availability.get("type") or ""),
        availability_message=str(availability.get("message") or ""),
        title=_text(data, "title"),
        description=_text(data, "description"),
        features=_text_list(data, "features"),
        images=_text_list(data, "images"),
        browse_nodes=_text_list(data, "browse_nodes"),
        variations=_text_list(data, "variations"),
        parent_external_id=_text(data, "parent_external_id"),
    )


class HttpProductApiClient:
    """
    JSON-over-HTTP client. Connect errors and timeouts are retried with
    exponential backoff, then surface as TransientError. Status codes map
    onto the upstream failure taxonomy the executor reacts to.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = settings.PRODUCT_API_URL,
        api_key: str = settings.PRODUCT_API_KEY,
        max_retries: int = settings.PRODUCT_API_MAX_RETRIES,
        wait=wait_exponential(multiplier=1, min=1, max=8),
    ):
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        self._wait = wait

    async def _request(self, url: str, params: dict) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
            stop=stop_after_attempt(self.max_retries),
            wait=self._wait,
            reraise=True,
        ):
            with attempt:
                return await self._client.get(
                    url,
                    params=params,
                    headers={"X-Api-Key": self.api_key},
                    timeout=settings.PRODUCT_API_TIMEOUT,
                )
        raise TransientError("Product API retries exhausted", {"url": url})

    async def get_item(
        self,
        external_id: str,
        region: str,
        resources: Sequence[str],
        endpoint: str = "items",
    ) -> ApiResponse:
        url = f"{self.base_url}/{endpoint}/{external_id}"
        params = {"region": region, "resources": ",".join(resources)}
        context = {"external_id": external_id, "endpoint": endpoint}

        t0 = time.monotonic()
        try:
            resp = await self._request(url, params)
        except httpx.TimeoutException as exc:
            raise TransientError("Product API timed out", {**context, "error": str(exc)}) from exc
        except httpx.HTTPError as exc:
            raise TransientError("Product API unreachable", {**context, "error": str(exc)}) from exc
        ms = int((time.monotonic() - t0) * 1000)

        status = resp.status_code
        if status == 429:
            raise RateLimitError(
                "Product API rate limit reached",
                {**context, "retry_after": resp.headers.get("Retry-After")},
            )
        if status == 404:
            raise ProductNotFoundError(f"Product {external_id} not found upstream", context)
        if status in (401, 403):
            raise AuthError("Product API rejected the credentials", {**context, "status": status})
        if status >= 500:
            raise TransientError(f"Product API returned {status}", {**context, "status": status})
        if status >= 400:
            raise PermanentError(f"Product API returned {status}", {**context, "status": status})

        log.debug("product_api.ok", external_id=external_id, endpoint=endpoint, ms=ms)
        return ApiResponse(payload=resp.content, status=status)

    def parse_item(self, payload: bytes) -> ProductItem:
        return parse_item(payload)


# ── Client lifecycle ──────────────────────────────────────────────────────────

_http: Optional[httpx.AsyncClient] = None
_client: Optional[HttpProductApiClient] = None


async def init_product_api() -> None:
    global _http, _client
    limits = httpx.Limits(max_connections=5, max_keepalive_connections=5)
    _http = httpx.AsyncClient(limits=limits)
    _client = HttpProductApiClient(_http)
    log.info("product_api.initialized", base_url=settings.PRODUCT_API_URL)


async def close_product_api() -> None:
    global _http, _client
    if _http is not None:
        await _http.aclose()
        _http = None
        _client = None
        log.info("product_api.closed")


def get_product_api() -> HttpProductApiClient:
    if _client is None:
        raise TransientError("Product API client not initialized")
    return _client
