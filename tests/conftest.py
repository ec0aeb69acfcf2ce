"""Shared pytest fixtures for catalog-bot tests."""

import asyncio
from dataclasses import dataclass

import pytest

from catalog_bot.config import BotConfig
from catalog_bot.coordinator import ApprovalCoordinator
from catalog_bot.errors import MessagingError
from catalog_bot.messaging import CallbackEvent, ReplyEvent
from catalog_bot.prompts import ApprovalDescriptor, SellerCandidate

OPERATOR_CHAT = "4242"


@dataclass
class SentMessage:
    message_id: int
    text: str
    buttons: list | None
    force_reply: bool

    @property
    def tokens(self) -> list[str]:
        return [b.token for row in (self.buttons or []) for b in row]


class FakeMessenger:
    """In-memory stand-in for the Telegram channel."""

    def __init__(self):
        self.sent: list[SentMessage] = []
        self.edited: list[tuple[int, str]] = []
        self.buttons_edited: list[tuple[int, list | None]] = []
        self.answered: list[str] = []
        self.fail_sends = False
        self._next_id = 1000

    async def send(self, text, buttons=None, force_reply=False):
        if self.fail_sends:
            raise MessagingError("chat unreachable")
        self._next_id += 1
        self.sent.append(SentMessage(self._next_id, text, buttons, force_reply))
        return self._next_id

    async def edit_text(self, message_id, text):
        self.edited.append((message_id, text))

    async def edit_buttons(self, message_id, buttons):
        self.buttons_edited.append((message_id, buttons))

    async def answer_callback(self, callback_id, text=None):
        self.answered.append(callback_id)

    def events(self):
        raise NotImplementedError("tests dispatch events directly")

    @property
    def last(self) -> SentMessage:
        return self.sent[-1]


async def settle() -> None:
    """Let pending tasks run up to their next suspension."""
    for _ in range(10):
        await asyncio.sleep(0)


def press(message: SentMessage, token: str, chat_id: str = OPERATOR_CHAT) -> CallbackEvent:
    """A button press on message with the given token."""
    return CallbackEvent(
        chat_id=chat_id,
        callback_id=f"cb-{message.message_id}-{token}",
        token=token,
        source_message_id=message.message_id,
    )


def reply(message: SentMessage, text: str, chat_id: str = OPERATOR_CHAT) -> ReplyEvent:
    """A text reply to message."""
    return ReplyEvent(
        chat_id=chat_id,
        message_id=message.message_id + 500,
        text=text,
        reply_to_message_id=message.message_id,
    )


@pytest.fixture
def config():
    """Config pointing at the operator chat, with no timeout."""
    config = BotConfig()
    config.telegram.chat_id = OPERATOR_CHAT
    config.pipeline.delay_between_items_seconds = 0
    return config


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def coordinator(config, messenger):
    return ApprovalCoordinator(config, messenger)


@pytest.fixture
def descriptor():
    return ApprovalDescriptor(
        category="Pulsa",
        brand="TELKOMSEL",
        type="Umum",
        product="Telkomsel 10.000",
        sku_count=3,
    )


@pytest.fixture
def sellers():
    return [
        SellerCandidate(seller_id="s-1", name="Alpha Reload", price=10150, rating=4.8),
        SellerCandidate(seller_id="s-2", name="Beta Pulsa", price=10175, rating=4.6),
        SellerCandidate(seller_id="s-3", name="Gamma Store", price=10200),
        SellerCandidate(seller_id="s-4", name="Delta Digital", price=10210, rating=4.1),
    ]


@pytest.fixture
def events():
    """Helpers for building inbound events and letting them land."""

    class Events:
        press = staticmethod(press)
        reply = staticmethod(reply)
        settle = staticmethod(settle)

    return Events
