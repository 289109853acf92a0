"""Pydantic models for node config validation with discriminated unions.

Every built-in node type has a config model selected by its `type` tag. The
registry validates a node's stored config through `validate_node_config`
before invoking the handler; a ValidationError fails only that node.
"""

import re
from typing import Literal, Union, Annotated, Optional, Dict, Any, List
from pydantic import BaseModel, Field, TypeAdapter, field_validator

from constants import SUPPORTED_NODE_TYPES
from services.execution.conditions import OPERATOR_ALIASES


_PHONE_RE = re.compile(r"^[\d\s\-\+\(\)]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

CONDITION_OPERATORS = frozenset([
    "equals", "not_equals", "contains", "not_contains",
    "greater_than", "less_than", "exists", "not_exists",
    "is_true", "is_false",
]) | frozenset(OPERATOR_ALIASES)


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeParams(BaseModel):
    """Base class for all node config models."""
    model_config = {"extra": "allow", "populate_by_name": True}


# =============================================================================
# TRIGGER NODE MODELS
# =============================================================================

class TriggerParams(BaseNodeParams):
    """Entry markers. Config is free-form."""
    type: Literal["trigger-manual", "trigger-schedule", "trigger-webhook"]


# =============================================================================
# LOGIC NODE MODELS
# =============================================================================

class DelayParams(BaseNodeParams):
    """Parameters for delay node (seconds)."""
    type: Literal["delay"]
    duration: float = Field(..., ge=0, le=300)


class ConditionParams(BaseNodeParams):
    """Parameters for condition node."""
    type: Literal["condition"]
    field: str = Field(..., min_length=1)
    operator: str = "equals"
    value: Any = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v):
        op = v.strip().lower()
        if op not in CONDITION_OPERATORS:
            raise ValueError(f"Invalid operator: {v}")
        return op


# =============================================================================
# HTTP NODE MODELS
# =============================================================================

class HttpRequestParams(BaseNodeParams):
    """Parameters for HTTP request node."""
    type: Literal["http-request"]
    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: float = Field(default=30.0, gt=0, le=300)
    fail_on_error: bool = Field(default=True, alias="failOnError")

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


# =============================================================================
# MESSAGING NODE MODELS
# =============================================================================

class SlackSendParams(BaseNodeParams):
    """Parameters for Slack incoming-webhook node."""
    type: Literal["slack-send"]
    message: str = Field(..., min_length=1)
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    channel: Optional[str] = None
    username: str = "FlowPilot Bot"
    icon_emoji: str = ":robot_face:"

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook(cls, v):
        if v and not v.startswith("https://hooks.slack.com/"):
            raise ValueError("Invalid Slack webhook URL format")
        return v


class DiscordSendParams(BaseNodeParams):
    """Parameters for Discord webhook node."""
    type: Literal["discord-send"]
    message: str = Field(..., min_length=1, max_length=2000)
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    username: str = "FlowPilot Bot"
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook(cls, v):
        if v and not v.startswith(("https://discord.com/api/webhooks/",
                                   "https://discordapp.com/api/webhooks/")):
            raise ValueError("Invalid Discord webhook URL format")
        return v


class TwilioMessageParams(BaseNodeParams):
    """Parameters shared by Twilio SMS and WhatsApp nodes."""
    type: Literal["twilio-sms", "twilio-whatsapp"]
    to: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    account_sid: Optional[str] = Field(default=None, alias="accountSid")
    auth_token: Optional[str] = Field(default=None, alias="authToken")
    from_number: Optional[str] = Field(default=None, alias="fromNumber")

    @field_validator("to")
    @classmethod
    def validate_phone(cls, v):
        number = v[len("whatsapp:"):] if v.startswith("whatsapp:") else v
        if not _PHONE_RE.match(number):
            raise ValueError("Invalid phone number format")
        return v


def _split_recipients(v):
    """Accept a comma-separated string or a list; drop blanks."""
    if isinstance(v, str):
        v = v.split(",")
    if not isinstance(v, list):
        raise ValueError("recipients must be a string or a list")
    recipients = [str(r).strip() for r in v if str(r).strip()]
    if not recipients:
        raise ValueError("at least one recipient is required")
    return recipients


class WhatsAppGroupParams(BaseNodeParams):
    """Parameters for sending one WhatsApp message to several numbers."""
    type: Literal["whatsapp-group"]
    to: List[str]
    message: str = Field(..., min_length=1)
    group_name: Optional[str] = Field(default=None, alias="groupName")
    account_sid: Optional[str] = Field(default=None, alias="accountSid")
    auth_token: Optional[str] = Field(default=None, alias="authToken")
    from_number: Optional[str] = Field(default=None, alias="fromNumber")

    @field_validator("to", mode="before")
    @classmethod
    def split_to(cls, v):
        return _split_recipients(v)


class AlertSendParams(BaseNodeParams):
    """Parameters for the multi-channel alert node.

    Unknown channels are reported per channel rather than rejected.
    """
    type: Literal["alert-send"]
    channels: List[str]
    recipients: List[str]
    message: str = Field(..., min_length=1)
    title: str = "Alert"
    priority: str = "normal"

    @field_validator("channels", mode="before")
    @classmethod
    def split_channels(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        channels = [str(c).strip().lower() for c in (v or []) if str(c).strip()]
        if not channels:
            raise ValueError("at least one channel is required")
        return list(dict.fromkeys(channels))

    @field_validator("recipients", mode="before")
    @classmethod
    def split_recipients(cls, v):
        return _split_recipients(v)


class EmailSendParams(BaseNodeParams):
    """Parameters for SMTP email node."""
    type: Literal["email-send"]
    to: str
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    from_address: Optional[str] = Field(default=None, alias="from")
    smtp_host: Optional[str] = Field(default=None, alias="smtpHost")
    smtp_port: Optional[int] = Field(default=None, alias="smtpPort", ge=1, le=65535)
    smtp_user: Optional[str] = Field(default=None, alias="smtpUser")
    smtp_pass: Optional[str] = Field(default=None, alias="smtpPass")

    @field_validator("to")
    @classmethod
    def validate_email(cls, v):
        if not _EMAIL_RE.match(v):
            raise ValueError("Invalid recipient email format")
        return v


# =============================================================================
# EDUCATION NODE MODELS
# =============================================================================

class AttendanceTrackParams(BaseNodeParams):
    """Parameters for attendance tracking node.

    Records come from `records` or from the input path in `recordsField`.
    Each record is {"studentId", "present"}.
    """
    type: Literal["attendance-track"]
    student_id: Optional[str] = Field(default=None, alias="studentId")
    class_id: Optional[str] = Field(default=None, alias="classId")
    threshold: float = Field(default=75.0, ge=0, le=100)
    action: Optional[str] = None
    records: List[Dict[str, Any]] = Field(default_factory=list)
    records_field: Optional[str] = Field(default=None, alias="recordsField")


class AssignmentCreateParams(BaseNodeParams):
    """Parameters for assignment creation node."""
    type: Literal["assignment-create"]
    title: str = Field(..., min_length=1)
    due_date: str = Field(..., alias="dueDate", min_length=1)
    description: Optional[str] = None
    class_id: Optional[str] = Field(default=None, alias="classId")
    notify_students: bool = Field(default=False, alias="notifyStudents")


class ScheduleCheckParams(BaseNodeParams):
    """Parameters for class schedule check node."""
    type: Literal["schedule-check"]
    class_id: Optional[str] = Field(default=None, alias="classId")
    teacher_id: Optional[str] = Field(default=None, alias="teacherId")
    date: Optional[str] = None
    reminder_minutes: int = Field(default=15, alias="reminderMinutes", ge=0)
    classes: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        if v is not None and not _DATE_RE.match(v):
            raise ValueError("date must be YYYY-MM-DD")
        return v


# =============================================================================
# DISCRIMINATED UNION - All Node Types
# =============================================================================

KnownNodeParams = Annotated[
    Union[
        # Triggers
        TriggerParams,
        # Logic
        DelayParams, ConditionParams,
        # HTTP
        HttpRequestParams,
        # Messaging
        SlackSendParams, DiscordSendParams, TwilioMessageParams, WhatsAppGroupParams,
        EmailSendParams, AlertSendParams,
        # Education
        AttendanceTrackParams, AssignmentCreateParams, ScheduleCheckParams,
    ],
    Field(discriminator="type")
]


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

# Create TypeAdapter for discriminated union (created once at module level for performance)
_known_node_adapter = TypeAdapter(KnownNodeParams)


def validate_node_config(node_type: str, config: Dict[str, Any]) -> BaseNodeParams:
    """Validate a built-in node's config using the discriminated union.

    Args:
        node_type: The node type tag
        config: The node's stored config mapping

    Returns:
        Validated config model (specific subclass based on node_type)

    Raises:
        ValidationError: If the config is invalid for the node type
        ValueError: If node_type is not a built-in type
    """
    if node_type not in SUPPORTED_NODE_TYPES:
        raise ValueError(f"Not a built-in node type: {node_type}")
    return _known_node_adapter.validate_python({**(config or {}), "type": node_type})
