"""
dispatchbot/models/executor_plan.py

Executor plan records, block-list entries and the mutation commands that
change them.

Mutations are a closed union discriminated on ``type``. Their JSON form is the
record buffered in the durable backlog:

    {"type": "extend", "payload": {"id": 12, "days": 7}}
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

PlanChoice = Literal["trial", "7", "15", "30"]
PlanStatus = Literal["active", "blocked", "completed", "cancelled"]

PLAN_CHOICES = ("trial", "7", "15", "30")
PLAN_STATUSES = ("active", "blocked", "completed", "cancelled")
TERMINAL_STATUSES = ("completed", "cancelled")


class ExecutorPlan(BaseModel):
    """
    ExecutorPlan is a time-bounded entitlement tracked for a phone-identified
    executor, plus the cursor of its reminder campaign.

    ``reminder_index`` points at the next reminder stage to fire; it equals the
    number of stages once the campaign is exhausted.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    chat_id: int
    thread_id: Optional[int] = None
    phone: str
    nickname: Optional[str] = None
    plan_choice: PlanChoice
    start_at: datetime
    ends_at: datetime
    comment: Optional[str] = None
    status: PlanStatus = "active"
    muted: bool = False
    reminder_index: int = 0
    reminder_last_sent: Optional[datetime] = None
    card_message_id: Optional[int] = None
    card_chat_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class ExecutorBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    phone: str
    reason: Optional[str] = None
    created_at: datetime


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class PlanInsertInput(_WireModel):
    chat_id: int
    thread_id: Optional[int] = None
    phone: str
    nickname: Optional[str] = None
    plan_choice: PlanChoice
    start_at: datetime
    ends_at: Optional[datetime] = None
    comment: Optional[str] = None

    @model_validator(mode="after")
    def check_period(self) -> "PlanInsertInput":
        if self.ends_at is not None and _as_utc(self.ends_at) < _as_utc(self.start_at):
            raise ValueError("ends_at must not be earlier than start_at")
        return self


def _as_utc(value: datetime) -> datetime:
    # Naive values are taken as UTC, matching how the store writes them
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PlanRef(_WireModel):
    id: int


class ExtendPayload(PlanRef):
    days: int = Field(gt=0)


class SetStatusPayload(PlanRef):
    status: PlanStatus
    reason: Optional[str] = None


class MutePayload(PlanRef):
    muted: bool


class SetStartPayload(PlanRef):
    # Free-form moderator input, parsed in the configured timezone when applied
    start_at: str


class CommentPayload(PlanRef):
    comment: Optional[str] = None


class CreateMutation(_WireModel):
    type: Literal["create"] = "create"
    payload: PlanInsertInput


class ExtendMutation(_WireModel):
    type: Literal["extend"] = "extend"
    payload: ExtendPayload


class SetStatusMutation(_WireModel):
    type: Literal["set-status"] = "set-status"
    payload: SetStatusPayload


class MuteMutation(_WireModel):
    type: Literal["mute"] = "mute"
    payload: MutePayload


class SetStartMutation(_WireModel):
    type: Literal["set-start"] = "set-start"
    payload: SetStartPayload


class CommentMutation(_WireModel):
    type: Literal["comment"] = "comment"
    payload: CommentPayload


class DeleteMutation(_WireModel):
    type: Literal["delete"] = "delete"
    payload: PlanRef


ExecutorPlanMutation = Annotated[
    Union[
        CreateMutation,
        ExtendMutation,
        SetStatusMutation,
        MuteMutation,
        SetStartMutation,
        CommentMutation,
        DeleteMutation,
    ],
    Field(discriminator="type"),
]

_mutation_adapter: TypeAdapter = TypeAdapter(ExecutorPlanMutation)


def dump_mutation(mutation) -> str:
    """Serialize a mutation to its backlog JSON record."""
    return mutation.model_dump_json(by_alias=True)


def load_mutation(raw: Union[str, bytes]):
    """Parse a backlog JSON record; raises pydantic.ValidationError on bad input."""
    return _mutation_adapter.validate_json(raw)


class PlanCreated(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["created"] = "created"
    plan: ExecutorPlan


class PlanUpdated(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["updated"] = "updated"
    plan: ExecutorPlan


class PlanDeleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["deleted"] = "deleted"
    id: int


MutationOutcome = Union[PlanCreated, PlanUpdated, PlanDeleted]
