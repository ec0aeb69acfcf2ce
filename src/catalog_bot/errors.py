"""
Error taxonomy for catalog-bot.

Run-level failures (Unauthorized, an unreachable chat channel at startup) halt
the run after the operator has been told. Item-level failures are caught by the
pipeline, counted, and processing moves on to the next item.
"""


class CatalogBotError(Exception):
    """Base class for all catalog-bot errors."""


class ApiError(CatalogBotError):
    """Non-2xx response from the catalog API."""

    def __init__(self, status: int, body: str = "", message: str | None = None):
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status}: {body[:200]}")


class SellerVerificationRequired(ApiError):
    """HTTP 400 because the seller demands buyer KTP/PPh22 verification."""

    def __init__(self, body: str = ""):
        super().__init__(400, body, f"Seller requires buyer verification: {body[:200]}")


class RateLimited(ApiError):
    """HTTP 429 persisted past the configured retry ceiling."""

    def __init__(self, body: str = "", retries: int = 0):
        self.retries = retries
        super().__init__(429, body, f"Rate limited after {retries} retries")


class Unauthorized(ApiError):
    """HTTP 401. Credentials expired; fatal to the run, never retried."""

    def __init__(self, body: str = ""):
        super().__init__(401, body, "Unauthorized (401): credentials need refreshing")


class MalformedResponse(ApiError):
    """2xx response whose body is not the JSON object we expect."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(status, body, f"Malformed response body (HTTP {status})")


class TransientNetwork(CatalogBotError):
    """Connection or timeout failure talking to the catalog API."""


class MessagingError(CatalogBotError):
    """The chat channel refused or failed to deliver a message."""


class ApprovalError(CatalogBotError):
    """An approval round-trip did not produce a decision."""


class ApprovalTimeout(ApprovalError):
    """No human answer arrived within the configured timeout."""


class RequestClosed(ApprovalError):
    """The operation behind a prompt finished before the prompt was registered."""


class CorrelationMiss(CatalogBotError):
    """Inbound event with no live pending entry. Logged, never propagated."""


class LogicError(CatalogBotError):
    """A broken internal invariant. Never expected in a correct run."""


class DuplicateResolution(LogicError):
    """A continuation was resumed a second time."""


class DuplicateKey(LogicError):
    """A correlation key already maps to a live pending entry."""


class InvalidTransition(LogicError):
    """A pending entry was moved to a state its current state cannot reach."""


class InvalidCode(CatalogBotError, ValueError):
    """A product code that is empty or uses characters outside [A-Z0-9]."""
