"""
Typed job payloads.

Each job type has its own payload model; ``db_update`` is itself a tagged
union on ``action``. Payloads are validated when a job is enqueued and again
when a persisted row is processed, so a row carrying an unknown type or
action fails validation instead of reaching a side effect.
"""
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class JobType(str, Enum):
    """Kinds of deferred work."""

    PROMOTION = "promotion"
    DB_UPDATE = "db_update"
    NOTIFY = "notify"


class JobStatus(str, Enum):
    """Job lifecycle. Only pending -> done and pending -> error are allowed."""

    PENDING = "pending"
    DONE = "done"
    ERROR = "error"


class Tier(str, Enum):
    """Account subscription levels."""

    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class PromotionPayload(BaseModel):
    """Event forwarded to the ad/promotion service."""

    model_config = ConfigDict(frozen=True)

    event: Literal["payment", "refund", "purchase"]
    user_id: Optional[str] = None
    amount: int = 0
    reference_id: str


class UpgradeAccount(BaseModel):
    """Raise an account to premium after a verified payment."""

    model_config = ConfigDict(frozen=True)

    action: Literal["upgrade"] = "upgrade"
    user_id: str = Field(..., min_length=1)
    payment_id: str
    amount: int = 0
    notify: bool = False


class DowngradeAccount(BaseModel):
    """Return an account to free after a verified refund."""

    model_config = ConfigDict(frozen=True)

    action: Literal["downgrade"] = "downgrade"
    user_id: str = Field(..., min_length=1)
    charge_id: str
    amount: int = 0
    notify: bool = False


DbUpdatePayload = Annotated[
    Union[UpgradeAccount, DowngradeAccount], Field(discriminator="action")
]


class NotifyPayload(BaseModel):
    """A message fanned out to the notification channels."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., min_length=1)  # payment_success, refund, upgrade, limit, error, ...
    message: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    amount: Optional[int] = None
    reference_id: Optional[str] = None

    @property
    def text(self) -> str:
        """Message body, falling back to a generic description."""
        return self.message or f"User {self.user_id or 'unknown'} event: {self.kind}"


JobPayload = Union[PromotionPayload, UpgradeAccount, DowngradeAccount, NotifyPayload]

_db_update_adapter: TypeAdapter = TypeAdapter(DbUpdatePayload)

PAYLOAD_MODELS: Dict[JobType, Union[Type[BaseModel], TypeAdapter]] = {
    JobType.PROMOTION: PromotionPayload,
    JobType.DB_UPDATE: _db_update_adapter,
    JobType.NOTIFY: NotifyPayload,
}


def parse_payload(job_type: JobType, payload: Union[BaseModel, Mapping[str, Any]]) -> JobPayload:
    """
    Validate a payload against its job type.

    Raises:
        pydantic.ValidationError: If the payload does not fit the type
    """
    data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
    model = PAYLOAD_MODELS[job_type]
    if isinstance(model, TypeAdapter):
        return model.validate_python(data)
    return model.model_validate(data)
