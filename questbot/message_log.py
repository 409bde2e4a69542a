# questbot/message_log.py
# Canonical message logger. Every inbound and outbound Telegram message goes
# through write_log; it never raises.

from typing import Optional

__all__ = ["write_log"]


def _console_echo(chat_id: Optional[str], direction: Optional[str], text: Optional[str]) -> None:
    """
    Format: [OUTBOUND] chat 12345 → first 120 chars
    """
    preview = (text or "")[:120]
    try:
        print(f"[{(direction or '').upper()}] chat {chat_id or 'n/a'} → {preview}")
    except Exception:
        pass


def write_log(
    direction: str,
    text: Optional[str],
    chat_id: Optional[str] = None,
    user_id: Optional[int] = None,
    channel: str = "telegram",
    meta: Optional[dict] = None,
) -> None:
    # Local imports to avoid circular deps
    from .db import SessionLocal
    from .models import MessageLog

    _console_echo(chat_id, direction, text)
    try:
        with SessionLocal() as s:
            s.add(MessageLog(
                user_id=user_id,
                chat_id=str(chat_id) if chat_id is not None else None,
                direction=direction,
                channel=channel,
                text=text,
                meta=meta or None,
            ))
            s.commit()
    except Exception as e:
        print(f"⚠️ message log write failed (non-fatal): {e!r}")
