import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from storefront.models.domain import new_id, now_utc

SYSTEM_AUTO = "SYSTEM_AUTO"


class ActorKind(str, enum.Enum):
    SYSTEM = "SYSTEM"
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"
    GATEWAY = "GATEWAY"


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ActorKind
    id: str

    @classmethod
    def system(cls) -> "Actor":
        return cls(kind=ActorKind.SYSTEM, id=SYSTEM_AUTO)

    @classmethod
    def admin(cls, email: str) -> "Actor":
        return cls(kind=ActorKind.ADMIN, id=email.strip().lower())

    @classmethod
    def customer(cls, email: str) -> "Actor":
        return cls(kind=ActorKind.CUSTOMER, id=email.strip().lower())

    @classmethod
    def gateway(cls, provider: str) -> "Actor":
        return cls(kind=ActorKind.GATEWAY, id=provider.strip().lower())

    @property
    def label(self) -> str:
        if self.kind == ActorKind.GATEWAY:
            return f"gateway:{self.id}"
        return self.id


class AuditEvent(BaseModel):
    id: str = Field(default_factory=lambda: new_id("aud_"))
    order_ref: str
    action: str
    actor: str
    from_status: str | None = None
    to_status: str | None = None
    accepted: bool
    reason_code: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=now_utc)
