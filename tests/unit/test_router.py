"""Unit tests for inbound event routing."""

from unittest.mock import AsyncMock

import pytest

from catalog_bot.codes import CodeTracker
from catalog_bot.errors import ApprovalTimeout, DuplicateKey, MessagingError, RequestClosed
from catalog_bot.messaging import CallbackEvent, ReplyEvent
from catalog_bot.registry import (
    ApprovalState,
    Continuation,
    PendingRegistry,
    PendingRequest,
    RequestKind,
)
from catalog_bot.router import InboundRouter
from catalog_bot.tokens import Mode, SellerDecision, SellerSubset

CHAT = "4242"


def callback(key, token, chat_id=CHAT):
    return CallbackEvent(
        chat_id=chat_id, callback_id=f"q-{key}", token=token, source_message_id=key
    )


def text_reply(key, text, chat_id=CHAT):
    return ReplyEvent(chat_id=chat_id, message_id=key + 500, text=text, reply_to_message_id=key)


class TestInboundRouter:
    """Tests for the InboundRouter class."""

    @pytest.fixture
    def registry(self):
        return PendingRegistry()

    @pytest.fixture
    def tracker(self):
        return CodeTracker()

    @pytest.fixture
    def opener(self):
        return AsyncMock(return_value=900)

    @pytest.fixture
    def router(self, registry, tracker, messenger, opener):
        return InboundRouter(registry, tracker, messenger, CHAT, opener)

    def pending(self, registry, key, kind, **payload):
        request = PendingRequest(
            correlation_key=key, kind=kind, continuation=Continuation(), payload=payload
        )
        registry.insert(key, request)
        return request

    # Origin and correlation misses

    async def test_foreign_chat_ignored(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.MODE_SELECTION)

        assert await router.dispatch(callback(10, "mode_auto", chat_id="999")) is False
        assert 10 in registry
        assert not entry.continuation.resumed
        assert messenger.answered == []

    async def test_unknown_key_changes_nothing(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.MODE_SELECTION)

        assert await router.dispatch(callback(11, "mode_auto")) is False
        assert await router.dispatch(text_reply(12, "TSEL10")) is False

        assert registry.get(10) is entry
        assert entry.state is ApprovalState.AWAITING_MODE_CHOICE
        assert not entry.continuation.resumed
        assert messenger.answered == ["q-11"]  # Still acknowledged
        assert messenger.sent == []

    async def test_malformed_token_ignored(self, router, registry):
        self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)

        assert await router.dispatch(callback(10, "code_confirm_A_B")) is False
        assert 10 in registry

    async def test_kind_mismatch_ignored(self, router, registry):
        entry = self.pending(registry, 10, RequestKind.MODE_SELECTION)

        assert await router.dispatch(callback(10, "seller_continue")) is False
        assert registry.get(10) is entry

    async def test_plain_message_ignored(self, router, registry):
        self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        event = ReplyEvent(chat_id=CHAT, message_id=77, text="TSEL10")

        assert await router.dispatch(event) is False

    async def test_answer_failure_does_not_block(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.MODE_SELECTION)
        messenger.answer_callback = AsyncMock(side_effect=MessagingError("down"))

        assert await router.dispatch(callback(10, "mode_confirm")) is True
        assert await entry.continuation.wait() is Mode.CONFIRM

    # Mode

    async def test_mode_resumes_once(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.MODE_SELECTION)

        assert await router.dispatch(callback(10, "mode_confirm")) is True
        assert await router.dispatch(callback(10, "mode_auto")) is False  # Duplicate tap

        assert await entry.continuation.wait() is Mode.CONFIRM
        assert entry.state is ApprovalState.RESOLVED
        assert 10 not in registry
        assert messenger.edited == [(10, "✅ Mode selected: <b>confirm</b>")]

    # Sellers

    async def test_seller_change(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.SELLER_CONFIRMATION, candidate_count=3)

        assert await router.dispatch(callback(10, "seller_main_b2")) is True

        assert await entry.continuation.wait() == SellerDecision.change(SellerSubset.MAIN_B2)
        assert messenger.buttons_edited == [(10, None)]
        assert "Main+B2" in messenger.last.text

    async def test_seller_subset_not_offered(self, router, registry):
        entry = self.pending(registry, 10, RequestKind.SELLER_CONFIRMATION, candidate_count=2)

        assert await router.dispatch(callback(10, "seller_b2")) is False
        assert registry.get(10) is entry

        assert await router.dispatch(callback(10, "seller_continue")) is True
        assert await entry.continuation.wait() == SellerDecision.keep()

    # Auto-code

    async def test_auto_code_accept(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.AUTO_CODE_CONFIRMATION, code="TSEL10")

        assert await router.dispatch(callback(10, "autocode_accept_TSEL10")) is True

        assert await entry.continuation.wait() == "TSEL10"
        assert 10 not in registry

    async def test_auto_code_stale_code(self, router, registry):
        entry = self.pending(registry, 10, RequestKind.AUTO_CODE_CONFIRMATION, code="TSEL101")

        assert await router.dispatch(callback(10, "autocode_accept_TSEL10")) is False
        assert registry.get(10) is entry

    async def test_auto_code_reject_chains_same_continuation(self, router, registry, opener):
        entry = self.pending(
            registry, 10, RequestKind.AUTO_CODE_CONFIRMATION, code="TSEL10", descriptor="D"
        )

        assert await router.dispatch(callback(10, "autocode_reject_TSEL10")) is True

        opener.assert_awaited_once_with("D", entry.continuation)
        assert not entry.continuation.resumed
        assert 10 not in registry

    async def test_auto_code_reject_open_failure_fails_waiter(self, router, registry, opener):
        entry = self.pending(
            registry, 10, RequestKind.AUTO_CODE_CONFIRMATION, code="TSEL10", descriptor="D"
        )
        opener.side_effect = MessagingError("down")

        await router.dispatch(callback(10, "autocode_reject_TSEL10"))

        with pytest.raises(MessagingError):
            await entry.continuation.wait()

    async def test_auto_code_reject_after_timeout_opens_nothing(
        self, router, registry, messenger, opener
    ):
        entry = self.pending(
            registry, 10, RequestKind.AUTO_CODE_CONFIRMATION, code="TSEL10", descriptor="D"
        )

        async def edit_while_timing_out(message_id, text):
            entry.continuation.fail(ApprovalTimeout("gave up"))

        messenger.edit_text = edit_while_timing_out

        assert await router.dispatch(callback(10, "autocode_reject_TSEL10")) is False
        opener.assert_not_awaited()
        assert len(registry) == 0

    async def test_auto_code_reject_when_opener_finds_request_closed(
        self, router, registry, opener
    ):
        entry = self.pending(
            registry, 10, RequestKind.AUTO_CODE_CONFIRMATION, code="TSEL10", descriptor="D"
        )
        opener.side_effect = RequestClosed("nothing to resume")

        assert await router.dispatch(callback(10, "autocode_reject_TSEL10")) is False
        assert not entry.continuation.resumed

    async def test_answer_for_timed_out_request_ignored(self, router, registry, tracker):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        assert await router.dispatch(text_reply(10, "ISAT5")) is True
        confirm_key = entry.secondary_key
        with pytest.raises(ApprovalTimeout):
            await entry.continuation.wait(0.01)

        assert await router.dispatch(callback(confirm_key, "code_confirm_ISAT5")) is False

        assert len(registry) == 0
        assert not tracker.contains("ISAT5")

    # Manual code

    async def test_reply_proposes_code(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)

        assert await router.dispatch(text_reply(10, " isat-5 ")) is True

        confirm = messenger.last
        assert confirm.tokens == ["code_confirm_ISAT5", "code_reject_ISAT5"]
        assert entry.state is ApprovalState.AWAITING_MANUAL_CODE_CONFIRM
        assert entry.proposed_code == "ISAT5"
        assert registry.get(confirm.message_id) is entry

    async def test_reply_to_confirmation_message_ignored(self, router, registry, messenger):
        self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        await router.dispatch(text_reply(10, "ISAT5"))
        confirm_id = messenger.last.message_id

        assert await router.dispatch(text_reply(confirm_id, "XL5")) is False

    async def test_reply_empty_code_hint(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)

        assert await router.dispatch(text_reply(10, "???")) is False

        assert "not a usable code" in messenger.last.text
        assert entry.state is ApprovalState.AWAITING_MANUAL_CODE

    async def test_reply_taken_code_hint(self, router, registry, tracker, messenger):
        tracker.reserve("ISAT5")
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)

        assert await router.dispatch(text_reply(10, "ISAT5B1")) is False

        assert "already in use" in messenger.last.text
        assert entry.secondary_key is None

    async def test_new_reply_supersedes_confirmation(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        await router.dispatch(text_reply(10, "ISAT5"))
        first = messenger.last.message_id
        await router.dispatch(text_reply(10, "XL5"))
        second = messenger.last.message_id

        assert first not in registry
        assert registry.get(second) is entry
        assert entry.proposed_code == "XL5"
        assert messenger.edited[-1][0] == first

        # The superseded button no longer resolves anything
        assert await router.dispatch(callback(first, "code_confirm_ISAT5")) is False
        assert not entry.continuation.resumed

    async def test_confirm_reserves_and_resumes(self, router, registry, tracker, messenger):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        await router.dispatch(text_reply(10, "ISAT5"))
        confirm = messenger.last.message_id

        assert await router.dispatch(callback(confirm, "code_confirm_ISAT5")) is True
        assert await router.dispatch(callback(confirm, "code_confirm_ISAT5")) is False

        assert await entry.continuation.wait() == "ISAT5"
        assert tracker.contains("ISAT5B2")
        assert 10 not in registry
        assert confirm not in registry

    async def test_confirm_on_prompt_key_ignored(self, router, registry):
        """Only the confirmation message's buttons confirm a code."""
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        await router.dispatch(text_reply(10, "ISAT5"))

        assert await router.dispatch(callback(10, "code_confirm_ISAT5")) is False
        assert not entry.continuation.resumed

    async def test_reject_reopens_prompt(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        await router.dispatch(text_reply(10, "ISAT5"))
        confirm = messenger.last.message_id

        assert await router.dispatch(callback(confirm, "code_reject_ISAT5")) is True

        assert entry.state is ApprovalState.AWAITING_MANUAL_CODE
        assert entry.proposed_code is None
        assert confirm not in registry
        assert 10 in registry
        assert not entry.continuation.resumed

        # A fresh reply to the original prompt starts over
        assert await router.dispatch(text_reply(10, "ISAT6")) is True
        assert entry.proposed_code == "ISAT6"

    async def test_reply_send_failure_leaves_prompt(self, router, registry, messenger):
        entry = self.pending(registry, 10, RequestKind.CODE_CONFIRMATION)
        messenger.fail_sends = True

        assert await router.dispatch(text_reply(10, "ISAT5")) is False
        assert entry.state is ApprovalState.AWAITING_MANUAL_CODE
        assert entry.secondary_key is None

    # Listener

    async def test_listen_continues_after_errors(self, router):
        router.dispatch = AsyncMock(side_effect=[RuntimeError("bad event"), True])

        async def stream():
            yield callback(1, "mode_auto")
            yield callback(2, "mode_auto")

        await router.listen(stream())

        assert router.dispatch.await_count == 2

    async def test_listen_stops_on_logic_error(self, router):
        router.dispatch = AsyncMock(side_effect=DuplicateKey("corrupt"))

        async def stream():
            yield callback(1, "mode_auto")
            yield callback(2, "mode_auto")

        with pytest.raises(DuplicateKey):
            await router.listen(stream())
        assert router.dispatch.await_count == 1
