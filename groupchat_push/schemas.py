import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorKind, PushError


class NotificationPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


class Notification(BaseModel):
    """
    One push notification, shared read-only by every batch of a fan-out.

    Data values are stored as strings since the gateway rejects any other
    type in the data block.
    """
    model_config = ConfigDict(frozen=True)

    title: str = ""
    body: str = ""
    sound: Optional[str] = None
    badge_count: int = Field(default=0, ge=0)
    data: Dict[str, str] = Field(default_factory=dict)
    priority: Optional[str] = None  # "high" or "normal", checked by the delivery client

    @field_validator("data", mode="before")
    @classmethod
    def stringify_data(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        return {str(k): v if isinstance(v, str) else str(v) for k, v in dict(value).items()}

    def with_badge(self, badge_count: int) -> "Notification":
        return self.model_copy(update={"badge_count": badge_count})


class RecipientToken(BaseModel):
    """A device token together with the user it is registered to"""
    user_id: str
    token: str


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_backoff: float = Field(default=1.0, ge=0)


class GroupMessage(BaseModel):
    """A chat message posted to a group, as handed over by the message-creation flow"""
    model_config = ConfigDict(populate_by_name=True)

    messageId: str = Field(default_factory=lambda: str(uuid.uuid4()))
    groupId: str = Field(validation_alias=AliasChoices("groupId", "conversationId"))
    senderId: str
    senderName: Optional[str] = None
    content: str
    messageType: str = "text"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_sender(self) -> str:
        return self.senderName or self.senderId


class DeliveryOutcome(BaseModel):
    """Final result of delivering one notification to one token"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    token: str
    attempts: int = 0
    error: Optional[PushError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None


class BatchResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    invalid_tokens: Set[str] = Field(default_factory=set)
    # Tokens never attempted because the deadline ran out first
    unprocessed_count: int = 0

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failure_count

    def record(self, outcome: DeliveryOutcome) -> None:
        if outcome.ok:
            self.success_count += 1
            return
        self.failure_count += 1
        if outcome.kind in (ErrorKind.NOT_REGISTERED, ErrorKind.INVALID_TOKEN):
            self.invalid_tokens.add(outcome.token)


class AggregateReport(BatchResult):
    """
    Merged result of a whole fan-out.

    merge() only adds counts and unions token sets, so the final totals do
    not depend on the order in which batches complete.
    """
    batch_count: int = 0
    badge_count: Optional[int] = None
    errors: List[str] = Field(default_factory=list)

    def merge(self, result: BatchResult) -> "AggregateReport":
        self.success_count += result.success_count
        self.failure_count += result.failure_count
        self.invalid_tokens |= result.invalid_tokens
        self.unprocessed_count += result.unprocessed_count
        if isinstance(result, AggregateReport):
            self.batch_count += result.batch_count
            self.errors.extend(result.errors)
            if self.badge_count != result.badge_count:
                self.badge_count = None
        else:
            self.batch_count += 1
        return self

    def summary(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "invalid_tokens": sorted(self.invalid_tokens),
            "unprocessed_count": self.unprocessed_count,
            "batch_count": self.batch_count,
            "badge_count": self.badge_count,
            "errors": list(self.errors),
        }
