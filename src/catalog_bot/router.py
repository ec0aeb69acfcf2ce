"""
Inbound event routing for catalog-bot.

Replies and button presses arrive on the Telegram update stream with no link
to the coroutine that sent the prompt. The router matches each one to its
pending entry by message id, decodes the answer, and resumes the waiting
operation. Anything that does not match a live entry is ignored: duplicate
taps and late answers are normal.
"""

import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any

from . import prompts
from .codes import CodeTracker, sanitize_code
from .errors import LogicError, MessagingError, RequestClosed
from .messaging import CallbackEvent, InboundEvent, Messenger, ReplyEvent
from .registry import (
    ApprovalState,
    Continuation,
    PendingRegistry,
    PendingRequest,
    RequestKind,
)
from .tokens import CodeAction, CodeAnswer, Mode, SellerDecision, decode_token

logger = logging.getLogger(__name__)

ManualCodeOpener = Callable[[prompts.ApprovalDescriptor, Continuation], Awaitable[int]]

MANUAL_STATES = (ApprovalState.AWAITING_MANUAL_CODE, ApprovalState.AWAITING_MANUAL_CODE_CONFIRM)


class InboundRouter:
    """Dispatches operator replies and button presses to pending requests."""

    def __init__(
        self,
        registry: PendingRegistry,
        tracker: CodeTracker,
        messenger: Messenger,
        chat_id: str,
        open_manual_code_prompt: ManualCodeOpener,
    ):
        """
        Initialize the router.

        Args:
            registry: Pending request table shared with the coordinator
            tracker: Code reservations shared with the coordinator
            messenger: Chat channel for follow-up prompts and edits
            chat_id: The operator chat; events from anywhere else are ignored
            open_manual_code_prompt: Opens a manual code prompt for a
                continuation (used when an auto-code is rejected)
        """
        self.registry = registry
        self.tracker = tracker
        self.messenger = messenger
        self.chat_id = str(chat_id)
        self.open_manual_code_prompt = open_manual_code_prompt

    async def listen(self, events: AsyncIterable[InboundEvent]) -> None:
        """Dispatch events until the stream ends. Logic errors stop the loop."""
        async for event in events:
            try:
                await self.dispatch(event)
            except LogicError:
                logger.exception("Approval state corrupted, stopping listener")
                raise
            except Exception:
                logger.exception(f"Error dispatching {type(event).__name__}")

    async def dispatch(self, event: InboundEvent) -> bool:
        """Route one event. Returns True if it resolved or advanced a request."""
        if event.chat_id != self.chat_id:
            logger.debug(f"Ignoring event from chat {event.chat_id}")
            return False

        if isinstance(event, ReplyEvent):
            return await self._on_reply(event)
        if isinstance(event, CallbackEvent):
            await self._quietly(
                self.messenger.answer_callback(event.callback_id), "answer callback"
            )
            return await self._on_callback(event)
        return False

    async def _quietly(self, awaitable: Awaitable[Any], what: str) -> None:
        # Cosmetic follow-ups; the decision has already been applied
        try:
            await awaitable
        except MessagingError as e:
            logger.warning(f"Could not {what}: {e}")

    def _miss(self, key: int, reason: str) -> bool:
        logger.debug(f"Correlation miss on {key}: {reason}")
        return False

    def _closed(self, entry: PendingRequest) -> bool:
        """True if nothing waits on entry any more; its keys are then dropped."""
        if not entry.continuation.resumed:
            return False
        self.registry.discard(entry.continuation)
        return True

    # Free-text replies

    async def _on_reply(self, event: ReplyEvent) -> bool:
        key = event.reply_to_message_id
        if key is None:
            return self._miss(event.message_id, "not a reply")

        entry = self.registry.get(key)
        if (
            entry is None
            or entry.kind is not RequestKind.CODE_CONFIRMATION
            or entry.correlation_key != key
            or entry.state not in MANUAL_STATES
        ):
            return self._miss(key, "no manual code prompt")
        if self._closed(entry):
            return self._miss(key, "request already closed")

        code = sanitize_code(event.text)
        if not code:
            await self._quietly(
                self.messenger.send(prompts.invalid_code_hint(event.text)), "send hint"
            )
            return False
        if not self.tracker.is_available(code):
            await self._quietly(self.messenger.send(prompts.taken_code_hint(code)), "send hint")

            return False

        text, buttons = prompts.manual_code_confirm_prompt(code)
        try:
            confirm_id = await self.messenger.send(text, buttons)
        except MessagingError:
            logger.exception(f"Could not send confirmation for code {code}")
            return False

        # The entry may have timed out while the confirmation was in flight
        if (
            self.registry.get(key) is not entry
            or entry.state not in MANUAL_STATES
            or self._closed(entry)
        ):
            await self._quietly(
                self.messenger.edit_text(confirm_id, prompts.prompt_expired()), "expire prompt"
            )
            return self._miss(key, "resolved during send")

        old_confirm = self.registry.detach_secondary_key(key)
        entry.advance(ApprovalState.AWAITING_MANUAL_CODE_CONFIRM)
        entry.proposed_code = code
        self.registry.attach_secondary_key(key, confirm_id)
        logger.info(f"Manual code {code} proposed, awaiting confirmation")

        if old_confirm is not None:
            await self._quietly(
                self.messenger.edit_text(old_confirm, prompts.manual_code_superseded(code)),
                "supersede old confirmation",
            )
        return True

    # Button presses

    async def _on_callback(self, event: CallbackEvent) -> bool:
        key = event.source_message_id
        decoded = decode_token(event.token)
        if decoded is None:
            return self._miss(key, f"malformed token {event.token!r}")
        kind, decision = decoded

        entry = self.registry.get(key)
        if entry is None:
            return self._miss(key, "no pending entry")
        if entry.kind is not kind:
            return self._miss(key, f"expected {entry.kind.value}, got {kind.value}")
        if self._closed(entry):
            return self._miss(key, "request already closed")

        if kind is RequestKind.MODE_SELECTION:
            return await self._on_mode(key, decision)
        if kind is RequestKind.SELLER_CONFIRMATION:
            return await self._on_seller(key, entry, decision)
        if kind is RequestKind.AUTO_CODE_CONFIRMATION:
            return await self._on_auto_code(key, entry, decision)
        return await self._on_manual_code(key, entry, decision)

    async def _on_mode(self, key: int, mode: Mode) -> bool:
        entry = self.registry.take(key, RequestKind.MODE_SELECTION)
        entry.advance(ApprovalState.RESOLVED)
        entry.continuation.resume(mode)
        logger.info(f"Mode selected: {mode.value}")
        await self._quietly(
            self.messenger.edit_text(key, prompts.mode_chosen(mode)), "edit mode prompt"
        )
        return True

    async def _on_seller(self, key: int, entry: PendingRequest, decision: SellerDecision) -> bool:
        offered = prompts.offered_subsets(entry.payload.get("candidate_count", 0))
        if decision.subset is not None and decision.subset not in offered:
            return self._miss(key, f"subset {decision.subset.value} was not offered")

        self.registry.take(key, RequestKind.SELLER_CONFIRMATION)
        entry.advance(ApprovalState.RESOLVED)
        entry.continuation.resume(decision)
        logger.info(f"Seller decision: {decision.action.value} {decision.subset or ''}".rstrip())
        await self._quietly(self.messenger.edit_buttons(key, None), "clear seller buttons")

        await self._quietly(
            self.messenger.send(prompts.seller_decided(decision)), "ack seller decision"
        )
        return True

    async def _on_auto_code(self, key: int, entry: PendingRequest, answer: CodeAnswer) -> bool:
        if answer.code != entry.payload.get("code"):
            return self._miss(key, f"stale auto-code {answer.code}")

        self.registry.take(key, RequestKind.AUTO_CODE_CONFIRMATION)
        entry.advance(ApprovalState.RESOLVED)

        if answer.action is CodeAction.ACCEPT:
            entry.continuation.resume(answer.code)
            logger.info(f"Auto-code {answer.code} accepted")
            await self._quietly(
                self.messenger.edit_text(key, prompts.auto_code_accepted(answer.code)),
                "edit auto-code prompt",
            )
            return True

        # Rejected: the same continuation now waits on a manual code prompt
        logger.info(f"Auto-code {answer.code} rejected, asking for a manual code")
        await self._quietly(
            self.messenger.edit_text(key, prompts.auto_code_rejected(answer.code)),
            "edit auto-code prompt",
        )
        if entry.continuation.resumed:
            return self._miss(key, "request closed before the manual prompt opened")
        try:
            await self.open_manual_code_prompt(entry.payload["descriptor"], entry.continuation)
        except RequestClosed:
            return self._miss(key, "request closed while the manual prompt was sent")
        except MessagingError as e:
            logger.exception("Could not open manual code prompt")
            if not entry.continuation.resumed:
                entry.continuation.fail(e)
        return True

    async def _on_manual_code(self, key: int, entry: PendingRequest, answer: CodeAnswer) -> bool:
        if (
            entry.state is not ApprovalState.AWAITING_MANUAL_CODE_CONFIRM
            or entry.secondary_key != key
            or entry.proposed_code != answer.code
        ):
            return self._miss(key, f"stale code confirmation {answer.code}")

        if answer.action is CodeAction.REJECT:
            self.registry.detach_secondary_key(key)
            entry.proposed_code = None
            entry.advance(ApprovalState.AWAITING_MANUAL_CODE)
            logger.info(f"Manual code {answer.code} rejected, prompt stays open")
            await self._quietly(
                self.messenger.edit_text(key, prompts.manual_code_rejected()),
                "edit confirmation",
            )
            return True

        self.registry.take(key, RequestKind.CODE_CONFIRMATION)
        entry.advance(ApprovalState.RESOLVED)
        code = self.tracker.reserve(answer.code)
        entry.continuation.resume(code)
        logger.info(f"Manual code {code} confirmed")
        await self._quietly(
            self.messenger.edit_text(key, prompts.manual_code_confirmed(code)),
            "edit confirmation",
        )
        return True
