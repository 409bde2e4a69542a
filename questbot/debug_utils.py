import json
from typing import Any, Optional

from .config import get_settings


def debug_enabled() -> bool:
    return bool(get_settings().QUESTBOT_DEBUG)


def debug_log(message: str, payload: Optional[dict[str, Any]] = None, tag: str = "debug") -> None:
    if not debug_enabled():
        return
    try:
        if payload is None:
            print(f"[{tag}] {message}")
        else:
            try:
                payload_str = json.dumps(payload, ensure_ascii=False, default=str)
            except Exception:
                payload_str = str(payload)
            print(f"[{tag}] {message} :: {payload_str}")
    except Exception:
        pass
