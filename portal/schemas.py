from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_iso() -> str:
    """UTC timestamp in the shape browsers produce with toISOString()."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PaperStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AccessStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


class Paper(BaseModel):
    """Paper record. ``url`` is derived per read and never persisted."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    title: str
    description: str
    category: str
    abstract: str
    author: str
    date: str
    status: PaperStatus = PaperStatus.PENDING
    fileName: str
    submittedBy: Optional[str] = None
    updatedAt: Optional[str] = None
    url: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(exclude={"url"}, exclude_none=True)


class StatusUpdate(BaseModel):
    status: PaperStatus


class AuditEntry(BaseModel):
    paperId: str
    fromStatus: Optional[str] = None
    toStatus: str
    actor: str
    at: str


class AccessRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    name: str
    email: str
    department: str = ""
    reason: str = ""
    status: AccessStatus = AccessStatus.PENDING
    createdAt: Optional[str] = None
    pin: Optional[str] = None
    approvedAt: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AccessRequestCreate(BaseModel):
    name: str = ""
    email: str = ""
    department: str = ""
    reason: str = ""


class AccessRequestStatus(BaseModel):
    id: str
    status: AccessStatus


class LoginRequest(BaseModel):
    email: str
    password: str


class PinRequest(BaseModel):
    pin: str


class TokenResponse(BaseModel):
    token: str
    email: Optional[str] = None
    role: Optional[str] = None


class MaintenanceRequest(BaseModel):
    confirm: bool = False


class Profile(BaseModel):
    """Free-form staff profile; unknown fields are kept."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    expertise: list[Any] = Field(default_factory=list)
    publications: list[Any] = Field(default_factory=list)
    education: list[Any] = Field(default_factory=list)
    links: list[Any] = Field(default_factory=list)
    image: Optional[str] = None
    updatedAt: Optional[str] = None


class ChatMessage(BaseModel):
    user: str
    text: str
    time: str
    profile: Optional[dict[str, Any]] = None


class PresenceEntry(BaseModel):
    identity: str
    profile: Optional[dict[str, Any]] = None
