# questbot/nudges.py
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import requests

from .config import Settings, get_settings
from .flows import Choice, OutboundMessage, Reply
from .message_log import write_log

# ──────────────────────────────────────────────────────────────────────────────
# Telegram sending
# ──────────────────────────────────────────────────────────────────────────────

MAX_BUTTONS_PER_ROW = 3
MAX_CALLBACK_BYTES = 64


class TelegramSendError(RuntimeError):
    pass


def inline_keyboard(message: OutboundMessage) -> Optional[dict]:
    """Abstract choices → Telegram inline keyboard, three buttons per row."""
    if not message.choices:
        return None
    rows: list[list[dict]] = []
    for choice in message.choices:
        data = choice.value
        if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
            print(f"[telegram] callback data too long, skipping button: {data!r}")
            continue
        if not rows or len(rows[-1]) >= MAX_BUTTONS_PER_ROW:
            rows.append([])
        rows[-1].append({"text": choice.label, "callback_data": data})
    return {"inline_keyboard": rows} if rows else None


class TelegramTransport:
    """Thin sendMessage client. Receives settings explicitly."""

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_settings()
        self.http = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.settings.TELEGRAM_BOT_TOKEN)

    def _url(self, method: str) -> str:
        base = self.settings.TELEGRAM_API_BASE.rstrip("/")
        return f"{base}/bot{self.settings.TELEGRAM_BOT_TOKEN}/{method}"

    def send(self, chat_id: str, message: OutboundMessage) -> Optional[int]:
        if not message.text or not message.text.strip():
            raise ValueError("Message text is empty")
        if not self.configured:
            print(f"[telegram] TELEGRAM_BOT_TOKEN not set; not sending to chat {chat_id}")
            return None
        payload: dict = {"chat_id": chat_id, "text": message.text}
        keyboard = inline_keyboard(message)
        if keyboard:
            payload["reply_markup"] = keyboard
        try:
            resp = self.http.post(
                self._url("sendMessage"),
                json=payload,
                timeout=self.settings.TELEGRAM_TIMEOUT_SEC,
            )
        except requests.RequestException as e:
            print(f"❌ Telegram send failed to chat {chat_id}: {e!r}")
            raise TelegramSendError(str(e)) from e
        if resp.status_code != 200:
            print(f"❌ Telegram send failed to chat {chat_id}: HTTP {resp.status_code} {resp.text[:200]}")
            raise TelegramSendError(f"HTTP {resp.status_code}")
        body = resp.json() or {}
        if not body.get("ok"):
            print(f"❌ Telegram send rejected for chat {chat_id}: {body.get('description')}")
            raise TelegramSendError(str(body.get("description") or "not ok"))
        return (body.get("result") or {}).get("message_id")

    def answer_callback(self, callback_query_id: str) -> None:
        """Stop the button spinner; failures are only logged."""
        if not self.configured:
            return
        try:
            self.http.post(
                self._url("answerCallbackQuery"),
                json={"callback_query_id": callback_query_id},
                timeout=self.settings.TELEGRAM_TIMEOUT_SEC,
            )
        except requests.RequestException as e:
            print(f"⚠️ answerCallbackQuery failed (non-fatal): {e!r}")


Sender = Callable[[str, OutboundMessage], Optional[int]]

_transport: Optional[TelegramTransport] = None


def get_transport() -> TelegramTransport:
    global _transport
    if _transport is None:
        _transport = TelegramTransport(get_settings())
    return _transport


def set_transport(transport: Optional[TelegramTransport]) -> None:
    global _transport
    _transport = transport


def send_message(chat_id: str, message: OutboundMessage, user_id: Optional[int] = None,
                 category: Optional[str] = None, sender: Optional[Sender] = None) -> Optional[int]:
    """
    Primary send function. Logs only after Telegram accepts.
    Requires an explicit chat id.
    """
    if not chat_id:
        raise ValueError("Recipient chat id missing. No fallback is permitted.")
    send = sender or get_transport().send
    message_id = send(str(chat_id), message)
    write_log(
        "outbound",
        message.text,
        chat_id=str(chat_id),
        user_id=user_id,
        meta={
            "category": category,
            "message_id": message_id,
            "choices": [c.value for c in message.choices] or None,
        },
    )
    return message_id


def send_reply(chat_id: str, reply: Reply, user_id: Optional[int] = None,
               sender: Optional[Sender] = None) -> int:
    """Send every message in a reply in order; returns how many went out."""
    sent = 0
    for msg in reply.messages:
        send_message(chat_id, msg, user_id=user_id, category="reply", sender=sender)
        sent += 1
    return sent

# ──────────────────────────────────────────────────────────────────────────────
# Reminder composition
# ──────────────────────────────────────────────────────────────────────────────

def compose_reminder(first_name: Optional[str], captured_count: int, oldest_at: Optional[datetime] = None,
                     now: Optional[datetime] = None) -> OutboundMessage:
    name = first_name or "there"
    noun = "item" if captured_count == 1 else "items"
    text = f"Hi {name}, you have {captured_count} captured {noun} waiting to be organized."
    if oldest_at is not None:
        age_h = int(((now or datetime.utcnow()) - oldest_at).total_seconds() // 3600)
        if age_h >= 24:
            text += f" The oldest has been waiting {age_h // 24} day(s)."
    text += " Tap to sort them into quests."
    return OutboundMessage(text=text, choices=[Choice(label="Organize now", value="cmd:organize")])
