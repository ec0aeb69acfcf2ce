"""
Pending approval registry for catalog-bot.

Maps the message id of every outstanding prompt to the suspended pipeline
operation waiting for its answer. None of the operations here await, so
check-and-insert and check-and-take are atomic on the event loop.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import (
    ApprovalTimeout,
    DuplicateKey,
    DuplicateResolution,
    InvalidTransition,
)

logger = logging.getLogger(__name__)


class RequestKind(str, Enum):
    """Which approval flow a pending entry belongs to."""

    MODE_SELECTION = "mode_selection"
    SELLER_CONFIRMATION = "seller_confirmation"
    CODE_CONFIRMATION = "code_confirmation"
    AUTO_CODE_CONFIRMATION = "auto_code_confirmation"


class ApprovalState(str, Enum):
    """Where a pending entry is in its flow."""

    AWAITING_MODE_CHOICE = "awaiting_mode_choice"
    AWAITING_SELLER_CHOICE = "awaiting_seller_choice"
    AWAITING_AUTO_CODE_CHOICE = "awaiting_auto_code_choice"
    AWAITING_MANUAL_CODE = "awaiting_manual_code"
    AWAITING_MANUAL_CODE_CONFIRM = "awaiting_manual_code_confirm"
    RESOLVED = "resolved"


INITIAL_STATES = {
    RequestKind.MODE_SELECTION: ApprovalState.AWAITING_MODE_CHOICE,
    RequestKind.SELLER_CONFIRMATION: ApprovalState.AWAITING_SELLER_CHOICE,
    RequestKind.AUTO_CODE_CONFIRMATION: ApprovalState.AWAITING_AUTO_CODE_CHOICE,
    RequestKind.CODE_CONFIRMATION: ApprovalState.AWAITING_MANUAL_CODE,
}

# A rejected auto-code does not transition: its continuation moves to a new
# CODE_CONFIRMATION entry and the old entry is resolved.
TRANSITIONS: dict[ApprovalState, frozenset[ApprovalState]] = {
    ApprovalState.AWAITING_MODE_CHOICE: frozenset({ApprovalState.RESOLVED}),
    ApprovalState.AWAITING_SELLER_CHOICE: frozenset({ApprovalState.RESOLVED}),
    ApprovalState.AWAITING_AUTO_CODE_CHOICE: frozenset({ApprovalState.RESOLVED}),
    ApprovalState.AWAITING_MANUAL_CODE: frozenset(
        {ApprovalState.AWAITING_MANUAL_CODE_CONFIRM}
    ),
    ApprovalState.AWAITING_MANUAL_CODE_CONFIRM: frozenset(
        {
            ApprovalState.RESOLVED,
            ApprovalState.AWAITING_MANUAL_CODE,
            ApprovalState.AWAITING_MANUAL_CODE_CONFIRM,
        }
    ),
    ApprovalState.RESOLVED: frozenset(),
}


class Continuation:
    """
    Resumption handle for one suspended operation.

    Resumed exactly once; a second resume raises DuplicateResolution.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = loop.create_future()
        self._resumed = False

    @property
    def resumed(self) -> bool:
        return self._resumed

    def resume(self, value: Any) -> None:
        if self._resumed:
            raise DuplicateResolution("Continuation resumed twice")
        self._resumed = True
        if not self._future.done():
            self._future.set_result(value)

    def fail(self, exc: BaseException) -> None:
        if self._resumed:
            raise DuplicateResolution("Continuation resumed twice")
        self._resumed = True
        if not self._future.done():
            self._future.set_exception(exc)

    async def wait(self, timeout: float | None = None) -> Any:
        """
        Suspend until resumed.

        Raises:
            ApprovalTimeout: timeout elapsed first; the continuation is then
                closed so a late answer cannot resume it
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            self._resumed = True
            self._future.cancel()
            raise ApprovalTimeout(f"No answer within {timeout}s") from None


@dataclass
class PendingRequest:
    """One outstanding human decision."""

    correlation_key: int
    kind: RequestKind
    continuation: Continuation
    payload: dict[str, Any] = field(default_factory=dict)
    state: ApprovalState | None = None
    secondary_key: int | None = None
    proposed_code: str | None = None

    def __post_init__(self) -> None:
        if self.state is None:
            self.state = INITIAL_STATES[self.kind]

    def advance(self, new_state: ApprovalState) -> None:
        """Move to new_state, or raise InvalidTransition."""
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"{self.kind.value}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state


class PendingRegistry:
    """Correlation table from prompt message id to pending request."""

    def __init__(self) -> None:
        self._entries: dict[int, PendingRequest] = {}
        self._aliases: dict[int, int] = {}

    def _primary(self, key: int) -> int | None:
        if key in self._entries:
            return key
        return self._aliases.get(key)

    def __contains__(self, key: int) -> bool:
        return self._primary(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def insert(self, key: int, request: PendingRequest) -> None:
        """
        Register a pending request under a fresh key.

        Raises:
            DuplicateKey: key already maps to a live entry
        """
        if key in self:
            raise DuplicateKey(f"Correlation key {key} already pending")
        self._entries[key] = request
        logger.debug(f"Pending {request.kind.value} registered under {key}")

    def get(self, key: int) -> PendingRequest | None:
        """Look up by primary or secondary key without removing."""
        primary = self._primary(key)
        return self._entries.get(primary) if primary is not None else None

    def take(self, key: int, kind: RequestKind | None = None) -> PendingRequest | None:
        """
        Remove and return the entry for key (primary or secondary).

        With kind given, an entry of another kind is left in place and None is
        returned. Both keys of the entry are removed together.
        """
        primary = self._primary(key)
        if primary is None:
            return None
        request = self._entries[primary]
        if kind is not None and request.kind != kind:
            return None
        del self._entries[primary]
        if request.secondary_key is not None:
            self._aliases.pop(request.secondary_key, None)
        return request

    def attach_secondary_key(self, key: int, secondary_key: int) -> None:
        """
        Alias secondary_key to the entry under key, replacing any older alias.

        Raises:
            KeyError: no entry under key
            DuplicateKey: secondary_key already in use
        """
        primary = self._primary(key)
        if primary is None:
            raise KeyError(key)
        if secondary_key in self:
            raise DuplicateKey(f"Correlation key {secondary_key} already pending")
        request = self._entries[primary]
        if request.secondary_key is not None:
            self._aliases.pop(request.secondary_key, None)
        request.secondary_key = secondary_key
        self._aliases[secondary_key] = primary

    def detach_secondary_key(self, key: int) -> int | None:
        """Drop the entry's alias; returns the alias that was dropped."""
        request = self.get(key)
        if request is None or request.secondary_key is None:
            return None
        old = request.secondary_key
        self._aliases.pop(old, None)
        request.secondary_key = None
        return old

    def discard(self, continuation: Continuation) -> int:
        """Remove every entry that would resume continuation. Returns the count."""
        keys = [k for k, r in self._entries.items() if r.continuation is continuation]
        for key in keys:
            self.take(key)
        return len(keys)

    def drain(self) -> list[PendingRequest]:
        """Remove and return every entry."""
        entries = list(self._entries.values())
        self._entries.clear()
        self._aliases.clear()
        return entries
