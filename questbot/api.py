# questbot/api.py
# FastAPI surface: Telegram webhook, Mini App JSON API, health.

import hmac
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import db, lifecycle, summary
from .config import get_settings
from .db import SessionLocal
from .errors import QuestError
from .flows import InboundEvent, split_callback
from .nudges import get_transport, send_reply
from .router import handle_event
from .scheduler import start_scheduler, stop_scheduler

APP_START_DT = datetime.now(timezone.utc)


def _uptime_seconds() -> int:
    try:
        return int((datetime.now(timezone.utc) - APP_START_DT).total_seconds())
    except Exception:
        return 0


def _print_env_banner():
    try:
        print("\n" + "═" * 72)
        print("🚀 Starting QuestBot")
        print(f"🕒 App start (UTC): {APP_START_DT.strftime('%d/%m/%y %H:%M:%S')}")
        print("═" * 72 + "\n")
    except Exception:
        pass


def _dbg(msg: str):
    try:
        print(f"[webhook] {msg}")
    except Exception:
        pass


app = FastAPI(title="QuestBot")
router = APIRouter()
api = APIRouter(prefix="/api")


@app.exception_handler(QuestError)
async def _quest_error_handler(request: Request, exc: QuestError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": type(exc).__name__, "message": exc.message},
    )

# ──────────────────────────────────────────────────────────────────────────────
# Startup
# ──────────────────────────────────────────────────────────────────────────────

@app.on_event("startup")
def on_startup():
    settings = get_settings()
    db.configure(settings)
    if settings.RESET_DB_ON_STARTUP:
        print("⚠️  RESET_DB_ON_STARTUP set: dropping and recreating all tables")
    db.init_db(reset=settings.RESET_DB_ON_STARTUP)
    start_scheduler(settings)
    _print_env_banner()


@app.on_event("shutdown")
def on_shutdown():
    stop_scheduler()

# ──────────────────────────────────────────────────────────────────────────────
# Webhook
# ──────────────────────────────────────────────────────────────────────────────

def event_from_update(update: dict[str, Any]) -> Optional[InboundEvent]:
    """Telegram update → InboundEvent; None for update types the bot ignores."""
    update_id = update.get("update_id")
    cb = update.get("callback_query")
    if cb:
        sender = cb.get("from") or {}
        chat = ((cb.get("message") or {}).get("chat") or {})
        step, value = split_callback(cb.get("data") or "")
        return InboundEvent(
            telegram_id=str(sender.get("id")),
            chat_id=str(chat.get("id") or sender.get("id")),
            kind="choice",
            choice=value,
            step=step,
            event_id=update_id,
            first_name=sender.get("first_name"),
            last_name=sender.get("last_name"),
            username=sender.get("username"),
        )
    msg = update.get("message") or update.get("edited_message")
    if not msg or "text" not in msg:
        return None
    sender = msg.get("from") or {}
    chat = msg.get("chat") or {}
    return InboundEvent(
        telegram_id=str(sender.get("id") or chat.get("id")),
        chat_id=str(chat.get("id")),
        kind="text",
        text=msg.get("text"),
        event_id=update_id,
        first_name=sender.get("first_name"),
        last_name=sender.get("last_name"),
        username=sender.get("username"),
    )


def _check_secret(provided: Optional[str]) -> None:
    expected = get_settings().WEBHOOK_SECRET
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided, expected):
        _dbg("rejected update with bad secret token")
        raise HTTPException(status_code=401, detail="bad secret token")


@router.post("/webhooks/telegram")
def telegram_inbound(
    update: dict = Body(...),
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
):
    """
    Telegram always gets a 200 once the secret checks out, even if handling
    failed, so it does not redeliver the same update in a loop.
    """
    _check_secret(x_telegram_bot_api_secret_token)
    event = event_from_update(update)
    if event is None:
        _dbg(f"ignored update {update.get('update_id')}")
        return {"ok": True, "ignored": True}

    cb = update.get("callback_query")
    if cb and cb.get("id"):
        get_transport().answer_callback(cb["id"])

    reply = handle_event(event)
    sent = 0
    if reply.messages and event.chat_id:
        try:
            sent = send_reply(event.chat_id, reply, user_id=reply.user_id)
        except Exception as e:
            print(f"[telegram] reply to chat {event.chat_id} failed: {e!r}")
    return {"ok": True, "sent": sent}

# ──────────────────────────────────────────────────────────────────────────────
# Mini App JSON API
# ──────────────────────────────────────────────────────────────────────────────

def current_telegram_id(
    x_telegram_user_id: Optional[str] = Header(None),
    telegram_id: Optional[str] = Query(None),
) -> str:
    tid = x_telegram_user_id or telegram_id
    if not tid:
        raise HTTPException(status_code=401, detail="missing Telegram user id")
    return str(tid)


def _read(telegram_id: str, fn: Callable):
    with SessionLocal() as s:
        user = lifecycle.get_user_by_telegram_id(s, telegram_id)
        return fn(s, user)


def _write(telegram_id: str, fn: Callable):
    """One transaction per request; any domain error rolls the whole write back."""
    with SessionLocal() as s:
        try:
            user = lifecycle.get_user_by_telegram_id(s, telegram_id)
            result = fn(s, user)
            s.commit()
            return result
        except Exception:
            s.rollback()
            raise


class StartFocusIn(BaseModel):
    activity_id: str
    feeling_before: Optional[str] = None
    est_minutes: Optional[int] = None


class ActivityRef(BaseModel):
    activity_id: str


class EvaluateIn(BaseModel):
    activity_id: str
    feeling_after: str


class EnrichIn(BaseModel):
    activity_id: str
    feeling_before: Optional[str] = None
    est_minutes: Optional[int] = None
    priority_tags: Optional[str] = None
    deadline: Optional[datetime] = None
    mental_block: Optional[bool] = None


class BreakdownIn(BaseModel):
    activity_id: str
    subtasks: list[str] = Field(default_factory=list)


class AbandonIn(BaseModel):
    activity_id: str
    reason: Optional[str] = None


class HabitLogIn(BaseModel):
    habit_id: str
    tier: str
    feeling_before: Optional[str] = None
    feeling_after: Optional[str] = None
    mental_block: Optional[str] = None


class GoalUpdateIn(BaseModel):
    goal_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    horizon: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None


def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # stored timestamps are naive UTC
    if dt is not None and dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@api.get("/tasks/ready")
def tasks_ready(telegram_id: str = Depends(current_telegram_id)):
    return _read(telegram_id, lambda s, u: {
        "tasks": [summary.activity_to_dict(a) for a in summary.ready_items(s, u.id)]
    })


@api.get("/tasks/completed")
def tasks_completed(limit: int = Query(50, ge=1, le=200), telegram_id: str = Depends(current_telegram_id)):
    return _read(telegram_id, lambda s, u: {
        "tasks": [summary.activity_to_dict(a) for a in summary.completed_items(s, u.id, limit=limit)]
    })


@api.get("/goals")
def goals(status: Optional[str] = Query("active"), telegram_id: str = Depends(current_telegram_id)):
    return _read(telegram_id, lambda s, u: {
        "goals": [summary.goal_to_dict(g) for g in summary.goals(s, u.id, status=None if status in (None, "", "all") else status)]
    })


@api.get("/habits")
def habits(telegram_id: str = Depends(current_telegram_id)):
    return _read(telegram_id, lambda s, u: {
        "habits": [summary.habit_to_dict(h) for h in summary.habits(s, u.id)]
    })


@api.get("/summary")
def user_summary(telegram_id: str = Depends(current_telegram_id)):
    return _read(telegram_id, lambda s, u: summary.summary(s, u))


@api.post("/tasks/startFocus")
def start_focus(body: StartFocusIn, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: lifecycle.start_focus(
        s, u.id, body.activity_id, feeling_before=body.feeling_before, est_minutes=body.est_minutes,
    ).as_dict())


@api.post("/tasks/completeFocus")
def complete_focus(body: ActivityRef, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: lifecycle.finish_focus(s, u.id, body.activity_id).as_dict())


@api.post("/tasks/evaluate")
def evaluate(body: EvaluateIn, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: lifecycle.evaluate_activity(
        s, u.id, body.activity_id, body.feeling_after,
    ).as_dict())


@api.post("/tasks/enrich")
def enrich(body: EnrichIn, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: lifecycle.enrich_activity(
        s, u.id, body.activity_id,
        feeling_before=body.feeling_before,
        est_minutes=body.est_minutes,
        priority_tags=body.priority_tags,
        deadline=_naive_utc(body.deadline),
        mental_block=body.mental_block,
    ).as_dict())


@api.post("/tasks/breakdown")
def breakdown(body: BreakdownIn, telegram_id: str = Depends(current_telegram_id)):
    def _split(s, u):
        results = lifecycle.split_activity(s, u.id, body.activity_id, body.subtasks)
        return {
            "parent_id": body.activity_id,
            "created_ids": [r.item_id for r in results],
            "score_delta": sum(r.score_delta for r in results),
            "user_total": results[-1].user_total,
        }
    return _write(telegram_id, _split)


@api.post("/tasks/abandon")
def abandon(body: AbandonIn, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: lifecycle.abandon_activity(
        s, u.id, body.activity_id, reason=body.reason,
    ).as_dict())


@api.post("/habits/log")
def habit_log(body: HabitLogIn, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: lifecycle.log_habit(
        s, u.id, body.habit_id, body.tier,
        feeling_before=body.feeling_before,
        feeling_after=body.feeling_after,
        mental_block=body.mental_block,
    ).as_dict())


@api.post("/goals/update")
def goal_update(body: GoalUpdateIn, telegram_id: str = Depends(current_telegram_id)):
    return _write(telegram_id, lambda s, u: summary.goal_to_dict(lifecycle.update_goal(
        s, u.id, body.goal_id,
        title=body.title,
        description=body.description,
        horizon=body.horizon,
        category=body.category,
        status=body.status,
    )))

# ──────────────────────────────────────────────────────────────────────────────
# Health / Root
# ──────────────────────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "ok": True,
        "app_start_utc": APP_START_DT.isoformat(),
        "uptime_seconds": _uptime_seconds(),
    }


@app.get("/")
def root():
    return {
        "service": "questbot",
        "status": "ok",
        "mini_app_url": get_settings().MINI_APP_URL,
        "uptime_seconds": _uptime_seconds(),
    }


# Mount routes
app.include_router(router)
app.include_router(api)
