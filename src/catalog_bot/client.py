"""
Catalog platform API client for catalog-bot.

Wraps the buyer product API with failure classification:

- 429 sleeps for the configured duration and re-sends the same request
- 401 fails at once with Unauthorized (credentials must be refreshed by hand)
- 400 from a seller demanding KTP/PPh22 fails with SellerVerificationRequired
- other non-2xx statuses fail with ApiError and are left to the caller
- transport failures fail with TransientNetwork

Requests are built once as immutable ApiRequest values, so a retried create
sends exactly the bytes and headers of the first attempt.
"""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx

from .config import CatalogConfig
from .errors import (
    ApiError,
    MalformedResponse,
    RateLimited,
    SellerVerificationRequired,
    TransientNetwork,
    Unauthorized,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RateLimitHook = Callable[[str, int, float], Awaitable[None]]

BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
PLATFORM_ORIGIN = "https://member.digiflazz.com"

# 400 bodies meaning the seller wants KTP/PPh22 paperwork from the buyer
VERIFICATION_MARKERS = ("ktp", "pph22", "bukti potong", "verifikasi", "mewajibkan buyer")


def needs_buyer_verification(body: str) -> bool:
    body = body.lower()
    return any(marker in body for marker in VERIFICATION_MARKERS)


@dataclass(frozen=True)
class ApiRequest:
    """A fully built outbound request. Never re-derived between attempts."""

    method: str
    target: str
    body: bytes | None = None
    headers: tuple[tuple[str, str], ...] = ()


@dataclass
class ApiResponse:
    """A decoded 2xx response."""

    status: int
    data: dict[str, Any]
    text: str = ""


@dataclass
class DeleteResult:
    """Outcome of a batch delete."""

    requested: int
    deleted: int
    message: str = ""
    ids: list[Any] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.requested - self.deleted


class CatalogClient:
    """
    Client for the catalog platform's buyer product API.

    Authentication is the browser session: an XSRF token plus the session
    cookie, both copied from a logged-in browser.
    """

    def __init__(
        self,
        config: CatalogConfig,
        sleep: Sleep = asyncio.sleep,
        on_rate_limit: RateLimitHook | None = None,
    ):
        """
        Initialize the catalog client.

        Args:
            config: Catalog API configuration
            sleep: Coroutine used for every wait (replaced in tests)
            on_rate_limit: Optional hook called before each rate-limit sleep
                with (target, retry_number, sleep_seconds)
        """
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.rate_limit_sleep = config.rate_limit_sleep_seconds
        self.max_rate_limit_retries = config.max_rate_limit_retries
        self.error_delay = config.error_delay_seconds
        self.on_rate_limit = on_rate_limit
        self._sleep = sleep
        self._headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-XSRF-TOKEN": config.get_xsrf_token() or "",
            "X-Requested-With": "XMLHttpRequest",
            "Cookie": config.get_cookie() or "",
            "User-Agent": BROWSER_USER_AGENT,
            "Referer": f"{PLATFORM_ORIGIN}/buyer-area/product",
            "Origin": PLATFORM_ORIGIN,
        }
        self.calls = 0

    def build_request(
        self,
        method: str,
        target: str,
        payload: Any = None,
    ) -> ApiRequest:
        """Build an immutable request; payload is JSON-encoded once, here."""
        body = json.dumps(payload).encode() if payload is not None else None
        return ApiRequest(
            method=method.upper(),
            target=target,
            body=body,
            headers=tuple(self._headers.items()),
        )

    def _url(self, target: str) -> str:
        if target.startswith("http"):
            return target
        return f"{self.base_url}{target}"

    async def call(self, request: ApiRequest) -> ApiResponse:
        """
        Send a request, sleeping and re-sending on 429.

        Raises:
            RateLimited: 429 past max_rate_limit_retries
            Unauthorized: 401
            SellerVerificationRequired: 400 asking for buyer KTP/PPh22
            ApiError: any other non-2xx status
            MalformedResponse: 2xx whose body is not a JSON object
            TransientNetwork: connection or timeout failure
        """
        retries = 0
        url = self._url(request.target)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while True:
                self.calls += 1
                try:
                    response = await client.request(
                        request.method,
                        url,
                        content=request.body,
                        headers=dict(request.headers),
                    )
                except httpx.TransportError as e:
                    logger.warning(
                        f"Network error on {request.target}, waiting {self.error_delay}s: {e}"
                    )
                    await self._sleep(self.error_delay)
                    raise TransientNetwork(f"{request.method} {request.target}: {e}") from e

                status = response.status_code

                if status == 429:
                    if (
                        self.max_rate_limit_retries is not None
                        and retries >= self.max_rate_limit_retries
                    ):
                        logger.error(f"Rate limit on {request.target} did not clear")
                        raise RateLimited(response.text, retries)
                    retries += 1
                    logger.warning(
                        f"Rate limited (429) on {request.target}, "
                        f"sleeping {self.rate_limit_sleep}s (retry {retries})"
                    )
                    if self.on_rate_limit is not None:
                        await self.on_rate_limit(request.target, retries, self.rate_limit_sleep)
                    await self._sleep(self.rate_limit_sleep)
                    continue

                if status == 401:
                    logger.error(f"Unauthorized (401) on {request.target}")
                    raise Unauthorized(response.text)

                if status == 400 and needs_buyer_verification(response.text):
                    logger.warning(f"Seller on {request.target} requires buyer verification")
                    raise SellerVerificationRequired(response.text)

                if not 200 <= status < 300:
                    if status >= 500:
                        logger.warning(
                            f"Server error ({status}) on {request.target}, "
                            f"waiting {self.error_delay}s"
                        )
                        await self._sleep(self.error_delay)
                    raise ApiError(status, response.text)

                try:
                    data = response.json()
                except ValueError as e:
                    raise MalformedResponse(status, response.text) from e
                if not isinstance(data, dict):
                    raise MalformedResponse(status, response.text)

                return ApiResponse(status=status, data=data, text=response.text)

    async def _get_list(self, target: str) -> list[dict[str, Any]]:
        response = await self.call(self.build_request("GET", target))
        items = response.data.get("data") or []
        if not isinstance(items, list):
            raise MalformedResponse(response.status, response.text)
        return items

    async def list_categories(self) -> list[dict[str, Any]]:
        """List all product categories."""
        logger.debug("Fetching categories")
        return await self._get_list("/category")

    async def list_entries(self, category_id: Any) -> list[dict[str, Any]]:
        """List the buyer's product rows in one category."""
        return await self._get_list(f"/category/{category_id}/")

    async def list_sellers(self, product_row_id: Any) -> list[dict[str, Any]]:
        """List the sellers offering a product row."""
        return await self._get_list(f"/seller/{product_row_id}")

    async def create_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Create (save) one product row. The entry is opaque to the client."""
        response = await self.call(self.build_request("POST", "", entry))
        return response.data

    async def delete_entries(self, ids: list[Any]) -> DeleteResult:
        """
        Delete product rows in one batch.

        The platform reports the count in free text ("12 produk berhasil
        dihapus"); when no number is present every requested id is assumed
        deleted.
        """
        if not ids:
            return DeleteResult(requested=0, deleted=0)

        response = await self.call(
            self.build_request("POST", "/multiple/delete", {"product_ids": ids})
        )
        message = str(response.data.get("message") or "")
        match = re.search(r"(\d+)", message)
        deleted = int(match.group(1)) if match else len(ids)
        return DeleteResult(requested=len(ids), deleted=deleted, message=message, ids=list(ids))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 2.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Retry an idempotent operation on ApiError or TransientNetwork.

    Unauthorized and RateLimited are never retried here: the first means the
    run must stop, the second has already been retried by the client.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    attempt = 1
    while True:
        try:
            return await operation()
        except (Unauthorized, RateLimited):
            raise
        except (ApiError, TransientNetwork) as e:
            if attempt >= attempts:
                raise
            logger.warning(f"Retry {attempt}/{attempts}: {e}")
            await sleep(delay)
            attempt += 1
