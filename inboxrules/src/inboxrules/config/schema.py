"""Pydantic models describing inboxrules configuration and rule documents."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import field_validator, model_serializer, model_validator


class ValidationError(ValueError):
    """Raised when configuration data does not satisfy the schema."""


# Runtime configuration -------------------------------------------------------


class EngineSettings(BaseModel):
    """Timeouts, parallelism, and selection behaviour of the pipeline."""

    model_config = ConfigDict(extra="forbid")

    reasoning_timeout_s: float = Field(default=30.0, gt=0)
    provider_timeout_s: float = Field(default=30.0, gt=0)
    max_parallel_evaluations: int = Field(default=4, ge=1)
    max_parallel_actions: int = Field(default=1, ge=1)
    batch_width: int = Field(default=10, ge=1)
    tie_break: Literal["stored_order", "most_recently_updated"] = "stored_order"
    multi_rule_selection: bool = False


class RetrySettings(BaseModel):
    """Backoff applied to idempotent provider operations."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_s: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    cap_s: float = Field(default=30.0, ge=0)


class ActionType(str, Enum):
    """Every action a rule can carry."""

    ARCHIVE = "archive"
    LABEL = "label"
    MOVE_FOLDER = "move_folder"
    DRAFT_EMAIL = "draft_email"
    REPLY = "reply"
    SEND_EMAIL = "send_email"
    FORWARD = "forward"
    MARK_READ = "mark_read"
    MARK_SPAM = "mark_spam"
    CALL_WEBHOOK = "call_webhook"
    DIGEST = "digest"
    TRACK_THREAD = "track_thread"


class ApprovalSettings(BaseModel):
    """Which resolved actions pause for a human decision."""

    model_config = ConfigDict(extra="forbid")

    require_for: List[ActionType] = Field(default_factory=lambda: [ActionType.SEND_EMAIL])
    risk_threshold: Optional[Literal["low", "medium", "high", "very_high"]] = "high"
    blocked: List[ActionType] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_overlap(cls, model: "ApprovalSettings") -> "ApprovalSettings":
        overlap = set(model.require_for) & set(model.blocked)
        if overlap:
            names = ", ".join(sorted(item.value for item in overlap))
            raise ValidationError(f"action types cannot be both gated and blocked: {names}")
        return model


class ReasoningSettings(BaseModel):
    """Reasoning backend used for AI conditions and AI-authored fields."""

    model_config = ConfigDict(extra="forbid")

    provider: Literal["openai", "none"] = "openai"
    model: str = "gpt-4.1-mini"
    api_key_env: str = "OPENAI_API_KEY"
    max_body_chars: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.0, ge=0, le=2)


class WebhookSettings(BaseModel):
    """Outbound webhook client settings."""

    model_config = ConfigDict(extra="forbid")

    timeout_s: float = Field(default=10.0, gt=0)
    secret_env: Optional[str] = None


class ImapSettings(BaseModel):
    """Connection and folder layout of an IMAP account."""

    model_config = ConfigDict(extra="forbid")

    host: str
    username: str
    password_env: str = "INBOXRULES_IMAP_PASSWORD"
    port: int = 993
    ssl: bool = True
    mailbox: str = "INBOX"
    archive_folder: str = "Archive"
    spam_folder: str = "Junk"
    drafts_folder: str = "Drafts"


class SmtpSettings(BaseModel):
    """Outbound SMTP relay used by folder-based adapters."""

    model_config = ConfigDict(extra="forbid")

    host: str
    username: str
    from_address: str
    password_env: str = "INBOXRULES_SMTP_PASSWORD"
    port: int = 465
    ssl: bool = True
    starttls: bool = False

    @model_validator(mode="after")
    def _validate_tls(cls, model: "SmtpSettings") -> "SmtpSettings":
        if model.ssl and model.starttls:
            raise ValidationError("smtp.ssl and smtp.starttls are mutually exclusive")
        return model


class RuntimeConfig(BaseModel):
    """Root configuration loaded from ``config.yaml``."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = 1
    engine: EngineSettings = Field(default_factory=EngineSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    approvals: ApprovalSettings = Field(default_factory=ApprovalSettings)
    reasoning: ReasoningSettings = Field(default_factory=ReasoningSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    imap: Optional[ImapSettings] = None
    smtp: Optional[SmtpSettings] = None


# Field values ----------------------------------------------------------------


class LiteralField(BaseModel):
    """A fixed field value; ``{{...}}`` markers refer to email attributes."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    value: str

    @model_serializer
    def _serialise(self) -> str:
        return self.value


class DirectiveField(BaseModel):
    """An instruction the reasoning capability turns into the field value."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    instruction: str = Field(min_length=1)

    @model_serializer
    def _serialise(self) -> Dict[str, str]:
        return {"ai": self.instruction}


def _coerce_field(value: Any) -> Any:
    if value is None or isinstance(value, (LiteralField, DirectiveField)):
        return value
    if isinstance(value, bool):
        raise ValidationError("field value must be text")
    if isinstance(value, (str, int, float)):
        return {"value": str(value)}
    if isinstance(value, dict):
        if set(value) == {"ai"}:
            return {"instruction": value["ai"]}
        if set(value) in ({"value"}, {"instruction"}):
            return value
    raise ValidationError("field value must be a string or a mapping with a single 'ai' key")


FieldValue = Annotated[Union[LiteralField, DirectiveField], BeforeValidator(_coerce_field)]


# Actions ---------------------------------------------------------------------


TEXT_FIELDS = ("label", "folder_name", "to", "cc", "bcc", "subject", "content", "url")


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    delay_in_minutes: Optional[int] = None

    @property
    def action_type(self) -> ActionType:
        return ActionType(getattr(self, "type"))

    def text_fields(self) -> Dict[str, Optional[Union[LiteralField, DirectiveField]]]:
        """Return the text-bearing fields this action type declares."""

        return {name: getattr(self, name) for name in TEXT_FIELDS if name in type(self).model_fields}


class ArchiveAction(_ActionBase):
    type: Literal["archive"] = "archive"


class LabelAction(_ActionBase):
    type: Literal["label"] = "label"
    label: Optional[FieldValue] = None
    label_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_target(cls, model: "LabelAction") -> "LabelAction":
        if model.label is None and not model.label_id:
            raise ValidationError("label action requires 'label' or 'label_id'")
        return model


class MoveFolderAction(_ActionBase):
    type: Literal["move_folder"] = "move_folder"
    folder_name: Optional[FieldValue] = None
    folder_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_target(cls, model: "MoveFolderAction") -> "MoveFolderAction":
        if model.folder_name is None and not model.folder_id:
            raise ValidationError("move_folder action requires 'folder_name' or 'folder_id'")
        return model


class DraftEmailAction(_ActionBase):
    type: Literal["draft_email"] = "draft_email"
    to: Optional[FieldValue] = None
    cc: Optional[FieldValue] = None
    bcc: Optional[FieldValue] = None
    subject: Optional[FieldValue] = None
    content: Optional[FieldValue] = None


class ReplyAction(_ActionBase):
    type: Literal["reply"] = "reply"
    content: FieldValue
    cc: Optional[FieldValue] = None
    bcc: Optional[FieldValue] = None


class SendEmailAction(_ActionBase):
    type: Literal["send_email"] = "send_email"
    to: FieldValue
    content: FieldValue
    cc: Optional[FieldValue] = None
    bcc: Optional[FieldValue] = None
    subject: Optional[FieldValue] = None


class ForwardAction(_ActionBase):
    type: Literal["forward"] = "forward"
    to: FieldValue
    cc: Optional[FieldValue] = None
    bcc: Optional[FieldValue] = None
    content: Optional[FieldValue] = None


class MarkReadAction(_ActionBase):
    type: Literal["mark_read"] = "mark_read"


class MarkSpamAction(_ActionBase):
    type: Literal["mark_spam"] = "mark_spam"


class CallWebhookAction(_ActionBase):
    type: Literal["call_webhook"] = "call_webhook"
    url: FieldValue


class DigestAction(_ActionBase):
    type: Literal["digest"] = "digest"
    content: Optional[FieldValue] = None


class TrackThreadAction(_ActionBase):
    type: Literal["track_thread"] = "track_thread"


Action = Annotated[
    Union[
        ArchiveAction,
        LabelAction,
        MoveFolderAction,
        DraftEmailAction,
        ReplyAction,
        SendEmailAction,
        ForwardAction,
        MarkReadAction,
        MarkSpamAction,
        CallWebhookAction,
        DigestAction,
        TrackThreadAction,
    ],
    Field(discriminator="type"),
]


# Rules -----------------------------------------------------------------------


class SystemType(str, Enum):
    """Tags of built-in rules."""

    TO_REPLY = "to_reply"
    NEWSLETTER = "newsletter"
    MARKETING = "marketing"
    CALENDAR = "calendar"
    RECEIPT = "receipt"
    NOTIFICATION = "notification"
    COLD_EMAIL = "cold_email"


class StaticConditions(BaseModel):
    """Field patterns; each is a substring or a ``*`` wildcard, case-insensitive."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None

    @field_validator("from_", "to", "subject", "body", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def patterns(self) -> Dict[str, str]:
        """Present patterns keyed by email field name."""

        found = {"from": self.from_, "to": self.to, "subject": self.subject, "body": self.body}
        return {key: value for key, value in found.items() if value is not None}


class LearnedPattern(BaseModel):
    """A sender or subject remembered for a rule.

    ``from`` values are a full address or a bare domain (``@shop.com`` or
    ``shop.com``); ``subject`` values match as a case-insensitive substring.
    An ``exclude`` pattern keeps the rule away from matching emails entirely.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["from", "subject"]
    value: str = Field(min_length=1)
    exclude: bool = False

    @field_validator("value")
    @classmethod
    def _strip_value(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValidationError("learned pattern value cannot be blank")
        return stripped

    def describe(self) -> str:
        return f"{self.type}: {self.value}"


class ConditionSet(BaseModel):
    """Natural-language instruction and/or static patterns."""

    model_config = ConfigDict(extra="forbid")

    ai_instructions: Optional[str] = None
    static: Optional[StaticConditions] = None

    @field_validator("ai_instructions", mode="before")
    @classmethod
    def _blank_instruction(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def has_static(self) -> bool:
        return self.static is not None and bool(self.static.patterns())

    @property
    def has_ai(self) -> bool:
        return self.ai_instructions is not None

    @property
    def is_active(self) -> bool:
        return self.has_static or self.has_ai


class Rule(BaseModel):
    """Representation of a single automation rule."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    enabled: bool = True
    run_on_threads: bool = False
    conditional_operator: Literal["AND", "OR"] = "AND"
    conditions: ConditionSet = Field(default_factory=ConditionSet)
    learned_patterns: List[LearnedPattern] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    system_type: Optional[SystemType] = None
    version: int = Field(default=1, ge=1)
    updated_at: Optional[datetime] = None

    @field_validator("conditional_operator", mode="before")
    @classmethod
    def _upper_operator(cls, value: Any) -> Any:
        if value is None:
            return "AND"
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValidationError("rule name cannot be blank")
        return stripped


class RulesDocument(BaseModel):
    """Top-level ``rules.yaml`` document."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = 1
    rules: List[Rule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(cls, model: "RulesDocument") -> "RulesDocument":
        ids: set[str] = set()
        names: set[str] = set()
        for rule in model.rules:
            if rule.id in ids:
                raise ValidationError(f"duplicate rule id '{rule.id}'")
            key = rule.name.casefold()
            if key in names:
                raise ValidationError(f"duplicate rule name '{rule.name}'")
            ids.add(rule.id)
            names.add(key)
        return model
