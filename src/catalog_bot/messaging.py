"""
Telegram messaging for catalog-bot.

Talks to the Telegram Bot HTTP API directly: sendMessage, editMessageText,
editMessageReplyMarkup, answerCallbackQuery, and long-polled getUpdates for
the inbound side.

API Documentation: https://core.telegram.org/bots/api
"""

import asyncio
import html
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from .errors import MessagingError

logger = logging.getLogger(__name__)

POLL_ERROR_DELAY_SECONDS = 5.0


@dataclass(frozen=True)
class InlineButton:
    """One inline keyboard button."""

    text: str
    token: str

    def to_dict(self) -> dict[str, str]:
        return {"text": self.text, "callback_data": self.token}


Keyboard = list[list[InlineButton]]


@dataclass(frozen=True)
class ReplyEvent:
    """A text message from the chat, possibly replying to one of ours."""

    chat_id: str
    message_id: int
    text: str
    reply_to_message_id: int | None = None


@dataclass(frozen=True)
class CallbackEvent:
    """A button press on one of our messages."""

    chat_id: str
    callback_id: str
    token: str
    source_message_id: int


InboundEvent = ReplyEvent | CallbackEvent


def parse_update(update: dict[str, Any]) -> InboundEvent | None:
    """Turn a raw getUpdates entry into an event, or None if it is neither kind."""
    message = update.get("message")
    if message and message.get("text") is not None:
        reply_to = message.get("reply_to_message") or {}
        return ReplyEvent(
            chat_id=str(message.get("chat", {}).get("id", "")),
            message_id=message.get("message_id", 0),
            text=message["text"],
            reply_to_message_id=reply_to.get("message_id"),
        )

    query = update.get("callback_query")
    if query and query.get("message"):
        source = query["message"]
        return CallbackEvent(
            chat_id=str(source.get("chat", {}).get("id", "")),
            callback_id=str(query.get("id", "")),
            token=query.get("data") or "",
            source_message_id=source.get("message_id", 0),
        )

    return None


def _keyboard_markup(buttons: Keyboard | None) -> dict[str, Any]:
    return {"inline_keyboard": [[b.to_dict() for b in row] for row in (buttons or [])]}


class Messenger(Protocol):
    """What the approval engine needs from a chat channel."""

    async def send(
        self, text: str, buttons: Keyboard | None = None, force_reply: bool = False
    ) -> int: ...

    async def edit_text(self, message_id: int, text: str) -> None: ...

    async def edit_buttons(self, message_id: int, buttons: Keyboard | None) -> None: ...

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None: ...

    def events(self) -> AsyncIterator[InboundEvent]: ...


class TelegramMessenger:
    """
    Client for one bot talking to one chat.

    All text is sent with HTML parse mode; callers escape user content.
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        poll_timeout_seconds: int = 30,
    ):
        """
        Initialize the Telegram client.

        Args:
            token: Bot token from BotFather
            chat_id: The operator chat every message goes to
            api_base: Bot API base URL
            timeout_seconds: Timeout for ordinary calls
            poll_timeout_seconds: Long-poll wait passed to getUpdates
        """
        self.base_url = f"{api_base.rstrip('/')}/bot{token}"
        self.chat_id = str(chat_id)
        self.timeout = timeout_seconds
        self.poll_timeout = poll_timeout_seconds

    async def _call(
        self,
        method: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
            try:
                response = await client.post(f"{self.base_url}/{method}", json=payload)
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise MessagingError(f"Telegram {method} failed: {e}") from e

        if not isinstance(data, dict):
            raise MessagingError(
                f"Telegram {method} failed: unexpected body {response.text[:200]}"
            )
        if not data.get("ok"):
            raise MessagingError(
                f"Telegram {method} failed: {data.get('description', response.status_code)}"
            )
        return data.get("result")

    async def get_me(self) -> dict[str, Any]:
        """Check the token; returns the bot's user record."""
        return await self._call("getMe", {})

    async def send(
        self, text: str, buttons: Keyboard | None = None, force_reply: bool = False
    ) -> int:
        """Send a message to the operator chat; returns its message id."""
        payload: dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if buttons:
            payload["reply_markup"] = _keyboard_markup(buttons)
        elif force_reply:
            payload["reply_markup"] = {"force_reply": True}
        result = await self._call("sendMessage", payload)
        return result["message_id"]

    async def edit_text(self, message_id: int, text: str) -> None:
        """Replace a message's text (this also drops its buttons)."""
        await self._call(
            "editMessageText",
            {
                "chat_id": self.chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": "HTML",
            },
        )

    async def edit_buttons(self, message_id: int, buttons: Keyboard | None) -> None:
        """Replace a message's buttons; None removes them."""
        await self._call(
            "editMessageReplyMarkup",
            {
                "chat_id": self.chat_id,
                "message_id": message_id,
                "reply_markup": _keyboard_markup(buttons),
            },
        )

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        """Stop the button's loading spinner."""
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        await self._call("answerCallbackQuery", payload)

    async def get_updates(self, offset: int | None = None) -> list[dict[str, Any]]:
        """Long-poll for new updates."""
        payload: dict[str, Any] = {
            "timeout": self.poll_timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=self.poll_timeout + 10) or []

    async def events(self) -> AsyncIterator[InboundEvent]:
        """Yield inbound events forever, surviving polling failures."""
        offset: int | None = None
        while True:
            try:
                updates = await self.get_updates(offset)
            except MessagingError as e:
                logger.warning(f"Polling failed, retrying in {POLL_ERROR_DELAY_SECONDS}s: {e}")
                await asyncio.sleep(POLL_ERROR_DELAY_SECONDS)
                continue

            for update in updates:
                offset = update["update_id"] + 1
                event = parse_update(update)
                if event is not None:
                    yield event


class OperatorNotifier:
    """
    Best-effort status messages to the operator.

    A failed notification is logged and never interrupts the run.
    """

    def __init__(self, messenger: Messenger):
        self.messenger = messenger

    async def _send(self, text: str) -> bool:
        try:
            await self.messenger.send(text)
            return True
        except MessagingError:
            logger.exception("Failed to send operator notification")
            return False

    async def send_error_notification(self, error: BaseException | str, context: str = "") -> bool:
        lines = ["🚨 <b>Error Detected</b>", ""]
        if context:
            lines.append(f"📍 <b>Context:</b> {html.escape(context)}")
        lines.append(f"❌ <b>Error:</b> {html.escape(str(error))}")
        lines.append("")
        lines.append(f"⏰ <b>Time:</b> {datetime.now():%Y-%m-%d %H:%M:%S}")
        return await self._send("\n".join(lines))

    async def send_rate_limit_notification(
        self, service: str, retry_count: int, sleep_seconds: float
    ) -> bool:
        return await self._send(
            "⚠️ <b>Rate Limit Detected</b>\n\n"
            f"🌐 <b>Service:</b> {html.escape(service)}\n"
            f"🔄 <b>Retry:</b> {retry_count}\n"
            f"⏱️ <b>Sleep Duration:</b> {sleep_seconds:g}s\n\n"
            "The run continues automatically after the sleep."
        )

    async def send_unauthorized_notification(self) -> bool:
        return await self._send(
            "🔐 <b>Session expired (401 Unauthorized)</b>\n\n"
            "The catalog session token is no longer valid.\n\n"
            "📝 <b>Action required:</b>\n"
            "1. Open the buyer product page in a logged-in browser\n"
            "2. Open developer tools > Network and refresh\n"
            "3. Copy the new XSRF token and cookie\n"
            "4. Update the environment and restart the run\n\n"
            f"⏰ <b>Time:</b> {datetime.now():%Y-%m-%d %H:%M:%S}"
        )

    async def send_completion_summary(self, stats: dict[str, Any]) -> bool:
        return await self._send(
            "✅ <b>Run Finished</b>\n\n"
            "📊 <b>Summary:</b>\n"
            f"• Total: {stats.get('total', 0)}\n"
            f"• Success: {stats.get('success', 0)}\n"
            f"• Skipped: {stats.get('skipped', 0)}\n"
            f"• Errors: {stats.get('errors', 0)}\n"
            f"• Success Rate: {stats.get('success_rate', '0%')}\n\n"
            f"⏰ <b>Duration:</b> {stats.get('duration', '-')}"
        )
