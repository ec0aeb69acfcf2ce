"""
Approval coordinator for catalog-bot.

The pipeline calls one request_* method per decision. Each sends a prompt,
registers the prompt's message id with a fresh continuation, and suspends
until the router resumes it from an inbound reply or button press.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable
from typing import Any

from . import prompts
from .codes import CodeTracker, generate_code
from .config import BotConfig
from .errors import ApprovalTimeout, MessagingError, RequestClosed
from .messaging import InboundEvent, Keyboard, Messenger
from .registry import Continuation, PendingRegistry, PendingRequest, RequestKind
from .router import InboundRouter
from .tokens import Mode, SellerDecision

logger = logging.getLogger(__name__)


class ApprovalCoordinator:
    """
    Suspend-and-resume surface for operator decisions.

    Construct one per run and pass it to whatever needs approvals.
    """

    def __init__(
        self,
        config: BotConfig,
        messenger: Messenger,
        tracker: CodeTracker | None = None,
        registry: PendingRegistry | None = None,
    ):
        self.config = config
        self.messenger = messenger
        self.tracker = tracker or CodeTracker(
            config.codes.backup1_suffix, config.codes.backup2_suffix
        )
        self.registry = registry or PendingRegistry()
        self.timeout = config.approval.timeout_seconds
        self.router = InboundRouter(
            self.registry,
            self.tracker,
            messenger,
            config.telegram.chat_id,
            self.open_manual_code_prompt,
        )
        self._listener: asyncio.Task | None = None
        self._listener_failure: str | None = None

    @property
    def pending_count(self) -> int:
        return len(self.registry)

    def start(self, events: AsyncIterable[InboundEvent] | None = None) -> asyncio.Task:
        """Start routing inbound events in the background."""
        if events is None:
            events = self.messenger.events()
        self._listener_failure = None
        self._listener = asyncio.create_task(self.router.listen(events))
        self._listener.add_done_callback(self._on_listener_done)
        return self._listener

    async def stop(self) -> None:
        """Stop the background listener."""
        listener, self._listener = self._listener, None
        if listener is None or listener.done():
            # A crashed listener was already reported by _on_listener_done
            return
        listener.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener

    def _on_listener_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if task.exception() is None:
            self._listener_failure = "event stream ended"
        else:
            self._listener_failure = repr(task.exception())
        logger.error(f"Inbound listener stopped: {self._listener_failure}")
        # Nobody is left to resume the waiting operations
        for entry in self.registry.drain():
            if not entry.continuation.resumed:
                entry.continuation.fail(self._listener_stopped())

    def _listener_stopped(self) -> MessagingError:
        return MessagingError(f"Inbound listener stopped: {self._listener_failure}")

    async def _expire(self, message_id: int) -> None:
        try:
            await self.messenger.edit_text(message_id, prompts.prompt_expired())
        except MessagingError as e:
            logger.warning(f"Could not expire prompt {message_id}: {e}")

    async def _open(
        self,
        kind: RequestKind,
        continuation: Continuation,
        text: str,
        buttons: Keyboard | None = None,
        payload: dict[str, Any] | None = None,
        force_reply: bool = False,
    ) -> int:
        """
        Send a prompt and register it against continuation.

        Raises:
            MessagingError: the send failed, or no listener is left to route answers
            RequestClosed: continuation finished while the prompt was being sent
        """
        if self._listener_failure is not None:
            raise self._listener_stopped()

        message_id = await self.messenger.send(text, buttons, force_reply=force_reply)

        # The wait may have timed out or the listener died during the send
        if continuation.resumed or self._listener_failure is not None:
            await self._expire(message_id)
            if self._listener_failure is not None:
                raise self._listener_stopped()
            raise RequestClosed(f"Prompt {message_id} has nothing left to resume")

        # No await between the check above and the insert
        self.registry.insert(
            message_id,
            PendingRequest(
                correlation_key=message_id,
                kind=kind,
                continuation=continuation,
                payload=payload or {},
            ),
        )
        return message_id

    async def _suspend(self, continuation: Continuation) -> Any:
        try:
            return await continuation.wait(self.timeout)
        except ApprovalTimeout:
            dropped = self.registry.discard(continuation)
            logger.warning(
                f"No operator answer within {self.timeout}s ({dropped} prompt(s) dropped)"
            )
            raise

    async def request_mode_selection(self) -> Mode:
        """
        Ask how codes should be applied this run.

        Falls back to the configured mode if the prompt cannot be delivered
        or goes unanswered.
        """
        fallback = Mode(self.config.approval.fallback_mode)
        continuation = Continuation()
        text, buttons = prompts.mode_prompt()
        try:
            await self._open(RequestKind.MODE_SELECTION, continuation, text, buttons)
            return await self._suspend(continuation)
        except (MessagingError, ApprovalTimeout) as e:
            logger.warning(f"Mode selection unavailable ({e}), using {fallback.value}")
            return fallback

    async def request_seller_confirmation(
        self,
        descriptor: prompts.ApprovalDescriptor,
        candidates: list[prompts.SellerCandidate],
        reasoning: str = "",
    ) -> SellerDecision:
        """Show the ranked sellers and wait for continue or a subset to change."""
        if not candidates:
            raise ValueError("Seller confirmation needs at least one candidate")

        continuation = Continuation()
        text, buttons = prompts.seller_prompt(descriptor, candidates, reasoning)
        await self._open(
            RequestKind.SELLER_CONFIRMATION,
            continuation,
            text,
            buttons,
            payload={
                "descriptor": descriptor,
                "candidates": tuple(candidates),
                "candidate_count": len(candidates),
                "reasoning": reasoning,
            },
        )
        return await self._suspend(continuation)

    async def request_auto_code_confirmation(
        self,
        descriptor: prompts.ApprovalDescriptor,
        skip_confirmation: bool = False,
        proposed: str | None = None,
    ) -> str:
        """
        Reserve a generated code, then (unless skipped) have the operator accept it.

        A rejection moves the same wait over to a manual code prompt, so the
        rejected code is never returned.
        """
        if proposed is None:
            proposed = generate_code(
                descriptor.product, descriptor.brand, self.config.codes.max_length
            )
        code = self.tracker.reserve(proposed)
        logger.info(f"Reserved code {code} for {descriptor.product}")

        if skip_confirmation:
            return code

        continuation = Continuation()
        text, buttons = prompts.auto_code_prompt(descriptor, code)
        await self._open(
            RequestKind.AUTO_CODE_CONFIRMATION,
            continuation,
            text,
            buttons,
            payload={"descriptor": descriptor, "code": code},
        )
        return await self._suspend(continuation)

    async def request_product_code(self, descriptor: prompts.ApprovalDescriptor) -> str:
        """Ask the operator to type a code, then confirm it."""
        continuation = Continuation()
        await self.open_manual_code_prompt(descriptor, continuation)
        return await self._suspend(continuation)

    async def open_manual_code_prompt(
        self,
        descriptor: prompts.ApprovalDescriptor,
        continuation: Continuation,
    ) -> int:
        """Send a reply-to-me code prompt that will resume continuation."""
        return await self._open(
            RequestKind.CODE_CONFIRMATION,
            continuation,
            prompts.manual_code_prompt(descriptor),
            payload={"descriptor": descriptor},
            force_reply=True,
        )
