"""
Conversation state and the transport-neutral event/reply shapes.

One active flow per user, stored as JSON in User.conversation_state. The union
is closed: a payload that does not match one of these models is treated as
corrupt and discarded by the wizard.
"""
from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .models import LIFE_AREAS

PromptState = Literal["idle", "awaiting"]

GUIDED_QUESTIONS = ("ideal", "current", "obstacle")
INTERVAL_CHOICES = (60, 120, 240, 480, 1440)
OrganizeStage = Literal["goal", "tags", "area", "horizon", "exe", "category"]
HabitStage = Literal["name", "area", "variants"]


# ──────────────────────────────────────────────────────────────────────────────
# Events / replies
# ──────────────────────────────────────────────────────────────────────────────

class Choice(BaseModel):
    label: str
    value: str


STEP_SEPARATOR = "|"


def step_choice(step: str, label: str, value: str) -> Choice:
    """A button bound to the step it was rendered for, so stale taps can be rejected."""
    return Choice(label=label, value=f"{step}{STEP_SEPARATOR}{value}")


def split_callback(data: str) -> tuple[Optional[str], str]:
    """"organize:A-0001:area|physical" -> ("organize:A-0001:area", "physical")."""
    if STEP_SEPARATOR in data:
        step, value = data.rsplit(STEP_SEPARATOR, 1)
        return step, value
    return None, data


class OutboundMessage(BaseModel):
    text: str
    choices: list[Choice] = Field(default_factory=list)


class InboundEvent(BaseModel):
    telegram_id: str
    chat_id: Optional[str] = None
    kind: Literal["text", "choice"] = "text"
    text: Optional[str] = None
    choice: Optional[str] = None
    step: Optional[str] = None          # step tag the choice was rendered for
    event_id: Optional[int] = None      # Telegram update_id
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None

    @property
    def body(self) -> str:
        raw = self.choice if self.kind == "choice" else self.text
        return (raw or "").strip()

    @property
    def command(self) -> Optional[str]:
        """Slash command name ("/organize@QuestBot" -> "organize") or the command of a `cmd:` button."""
        body = self.body
        if self.kind == "text" and body.startswith("/"):
            parts = body[1:].split()
            return parts[0].split("@")[0].lower() if parts else ""
        if self.kind == "choice" and self.step is None and body.startswith("cmd:"):
            return body[len("cmd:"):].lower()
        return None


class Reply(BaseModel):
    messages: list[OutboundMessage] = Field(default_factory=list)
    user_id: Optional[int] = None       # set by the router once the sender is known

    def say(self, text: str, choices: Optional[list[Choice]] = None) -> "Reply":
        self.messages.append(OutboundMessage(text=text, choices=choices or []))
        return self

    @property
    def text(self) -> str:
        return "\n\n".join(m.text for m in self.messages)

# ──────────────────────────────────────────────────────────────────────────────
# Flow states
# ──────────────────────────────────────────────────────────────────────────────

class _FlowBase(BaseModel):
    prompt: PromptState = "idle"

    @property
    def step(self) -> str:  # overridden per flow
        raise NotImplementedError


class OnboardingModeState(_FlowBase):
    flow: Literal["onboarding_mode"] = "onboarding_mode"

    @property
    def step(self) -> str:
        return "mode"


class GuidedAnswer(BaseModel):
    ideal: Optional[str] = None
    current: Optional[str] = None
    obstacle: Optional[str] = None


class OnboardingGuidedState(_FlowBase):
    flow: Literal["onboarding_guided"] = "onboarding_guided"
    area_idx: int = 0
    question_idx: int = 0
    answers: dict[str, GuidedAnswer] = Field(default_factory=dict)

    @property
    def area(self) -> str:
        return LIFE_AREAS[self.area_idx]

    @property
    def question(self) -> str:
        return GUIDED_QUESTIONS[self.question_idx]

    @property
    def step(self) -> str:
        return f"guided:{self.area}:{self.question}"


class OnboardingManualState(_FlowBase):
    flow: Literal["onboarding_manual"] = "onboarding_manual"

    @property
    def step(self) -> str:
        return "manual"


class IntervalState(_FlowBase):
    flow: Literal["interval"] = "interval"

    @property
    def step(self) -> str:
        return "interval"


class OrganizeDraft(BaseModel):
    goal_id: Optional[str] = None
    selected_tags: list[str] = Field(default_factory=list)
    life_area: Optional[str] = None
    horizon: Optional[str] = None
    exe_type: Optional[str] = None


class OrganizeState(_FlowBase):
    flow: Literal["organize"] = "organize"
    queue: list[str] = Field(default_factory=list)       # activity ids, oldest first
    goal_ids: list[str] = Field(default_factory=list)    # snapshot at start
    position: int = 0
    stage: OrganizeStage = "goal"
    draft: OrganizeDraft = Field(default_factory=OrganizeDraft)
    organized: int = 0
    points: int = 0

    @property
    def current(self) -> Optional[str]:
        return self.queue[self.position] if self.position < len(self.queue) else None

    @property
    def step(self) -> str:
        return f"organize:{self.current}:{self.stage}"


class HabitState(_FlowBase):
    flow: Literal["habit"] = "habit"
    stage: HabitStage = "name"
    name: Optional[str] = None
    life_area: Optional[str] = None

    @property
    def step(self) -> str:
        return f"habit:{self.stage}"


FlowState = Annotated[
    Union[
        OnboardingModeState,
        OnboardingGuidedState,
        OnboardingManualState,
        IntervalState,
        OrganizeState,
        HabitState,
    ],
    Field(discriminator="flow"),
]

_ADAPTER = TypeAdapter(FlowState)


def dump_state(state: Optional[_FlowBase]) -> Optional[str]:
    if state is None:
        return None
    return state.model_dump_json()


def load_state(raw: Optional[str]) -> Optional[FlowState]:
    if not raw:
        return None
    return _ADAPTER.validate_json(raw)
