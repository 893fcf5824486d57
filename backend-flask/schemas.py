from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from utils import ApiError

TRIGGER_TYPES = (
    "status_changed",
    "tag_added",
    "tag_removed",
    "days_in_stage",
    "no_activity",
    "interview_scheduled",
    "interview_completed",
    "score_threshold",
    "manual",
)

# Older clients send the short form.
TRIGGER_ALIASES = {"status_change": "status_changed"}

ACTION_TYPES = (
    "send_email",
    "add_tag",
    "remove_tag",
    "change_status",
    "assign_user",
    "create_task",
    "send_notification",
    "add_note",
    "schedule_interview",
    "webhook",
)

TASK_PRIORITIES = ("low", "medium", "high", "urgent")

CANDIDATE_STATUSES = (
    "new",
    "contacted",
    "screening",
    "interview_scheduled",
    "interview_completed",
    "offer_sent",
    "offer_accepted",
    "offer_rejected",
    "hired",
    "rejected",
    "on_hold",
    "archived",
)


def normalize_trigger_type(value: Any) -> str:
    s = str(value or "").strip().lower()
    return TRIGGER_ALIASES.get(s, s)


class FieldCondition(BaseModel):
    """Equality (or membership, when ``value`` is a list) against a candidate field."""

    model_config = ConfigDict(extra="forbid")

    field: str = Field(min_length=1)
    value: Any = None


class TriggerSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    fromStatus: Optional[Union[str, List[str]]] = None
    toStatus: Optional[Union[str, List[str]]] = None
    tag: Optional[str] = None
    tags: Optional[List[str]] = None
    daysElapsed: Optional[float] = Field(default=None, ge=0)
    daysInStage: Optional[float] = Field(default=None, ge=0)
    minScore: Optional[float] = None
    maxScore: Optional[float] = None
    scoreType: Optional[Literal["overall", "technical", "cultural", "communication"]] = None
    interviewType: Optional[str] = None
    source: Optional[List[str]] = None
    experienceLevel: Optional[List[str]] = None
    requiredTags: Optional[List[str]] = None
    customFields: Optional[Dict[str, Any]] = None
    conditions: Optional[List[FieldCondition]] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        t = normalize_trigger_type(value)
        if t not in TRIGGER_TYPES:
            raise ValueError(f"unknown trigger type '{value}'")
        return t

    @model_validator(mode="after")
    def _check_params(self):
        if self.type == "days_in_stage" and self.daysInStage is None:
            raise ValueError("daysInStage is required for days_in_stage triggers")
        if self.type == "no_activity" and self.daysElapsed is None:
            raise ValueError("daysElapsed is required for no_activity triggers")
        if self.type == "score_threshold":
            if self.minScore is None and self.maxScore is None:
                raise ValueError("minScore or maxScore is required for score_threshold triggers")
            if self.minScore is not None and self.maxScore is not None and self.maxScore < self.minScore:
                raise ValueError("maxScore must be >= minScore")
        return self


class ActionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal[ACTION_TYPES]  # type: ignore[valid-type]

    emailTemplateId: Optional[str] = None
    emailSubject: Optional[str] = None
    emailBody: Optional[str] = None
    emailTo: Optional[Literal["candidate", "assigned_user", "custom"]] = None
    emailCustomRecipient: Optional[str] = None

    tagName: Optional[str] = None
    tagNames: Optional[List[str]] = None

    newStatus: Optional[str] = None

    assignToUserId: Optional[str] = None
    assignToUsers: Optional[List[str]] = None
    assignmentRule: Optional[Literal["round_robin", "least_loaded", "specific_user"]] = None

    taskTitle: Optional[str] = None
    taskDescription: Optional[str] = None
    taskDueInDays: Optional[int] = Field(default=None, ge=0, le=365)
    taskAssignTo: Optional[str] = None
    taskPriority: Optional[Literal[TASK_PRIORITIES]] = None  # type: ignore[valid-type]

    noteContent: Optional[str] = None
    noteIsPrivate: Optional[bool] = None

    notificationMessage: Optional[str] = None
    notifyUsers: Optional[List[str]] = None

    interviewType: Optional[str] = None
    interviewInDays: Optional[int] = Field(default=None, ge=0, le=365)

    webhookUrl: Optional[str] = None
    webhookMethod: Optional[Literal["GET", "POST", "PUT"]] = None
    webhookPayload: Optional[Dict[str, Any]] = None
    webhookHeaders: Optional[Dict[str, str]] = None

    delayMinutes: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_required(self):
        t = self.type
        if t == "send_email":
            if not self.emailTemplateId and not self.emailSubject:
                raise ValueError("send_email needs emailTemplateId or emailSubject")
            if self.emailTo == "custom" and not self.emailCustomRecipient:
                raise ValueError("emailCustomRecipient is required when emailTo is 'custom'")
        elif t in {"add_tag", "remove_tag"}:
            if not self.tagName and not self.tagNames:
                raise ValueError(f"{t} needs tagName or tagNames")
        elif t == "change_status":
            if str(self.newStatus or "").strip().lower() not in CANDIDATE_STATUSES:
                raise ValueError("change_status needs a valid newStatus")
        elif t == "assign_user":
            rule = self.assignmentRule or "specific_user"
            if rule == "specific_user" and not self.assignToUserId:
                raise ValueError("assignToUserId is required for specific_user assignment")
            if rule != "specific_user" and not self.assignToUsers:
                raise ValueError(f"assignToUsers is required for {rule} assignment")
        elif t == "create_task":
            if not str(self.taskTitle or "").strip():
                raise ValueError("create_task needs taskTitle")
        elif t == "add_note":
            if not str(self.noteContent or "").strip():
                raise ValueError("add_note needs noteContent")
        elif t == "send_notification":
            if not str(self.notificationMessage or "").strip():
                raise ValueError("send_notification needs notificationMessage")
        elif t == "webhook":
            url = str(self.webhookUrl or "").strip().lower()
            if not (url.startswith("http://") or url.startswith("https://")):
                raise ValueError("webhook needs an http(s) webhookUrl")
        return self


class WorkflowIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    trigger: TriggerSpec
    actions: List[ActionSpec] = Field(min_length=1)
    isActive: bool = True
    priority: int = 0
    maxExecutionsPerDay: Optional[int] = Field(default=None, ge=1)
    maxExecutionsPerCandidate: Optional[int] = Field(default=None, ge=1)
    testMode: bool = False


class WorkflowPatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    trigger: Optional[TriggerSpec] = None
    actions: Optional[List[ActionSpec]] = Field(default=None, min_length=1)
    isActive: Optional[bool] = None
    priority: Optional[int] = None
    maxExecutionsPerDay: Optional[int] = Field(default=None, ge=1)
    maxExecutionsPerCandidate: Optional[int] = Field(default=None, ge=1)
    testMode: Optional[bool] = None


def validation_details(exc: ValidationError) -> list[dict[str, str]]:
    out = []
    for e in exc.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()) if p != "__root__")
        msg = str(e.get("msg") or "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        out.append({"field": loc, "message": msg})
    return out


def parse_model(model_cls, data: Any):
    try:
        return model_cls.model_validate(data or {})
    except ValidationError as e:
        details = validation_details(e)
        first = details[0] if details else {"field": "", "message": "Invalid payload"}
        prefix = f"{first['field']}: " if first["field"] else ""
        raise ApiError("BAD_REQUEST", f"Validation failed: {prefix}{first['message']}", details=details)
