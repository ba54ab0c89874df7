from enum import Enum
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

LoginStatus = Literal[
    "pending",
    "scanned",
    "authorized",
    "approved",
    "completed",
    "success",
    "failed",
    "expired",
]

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {"completed", "success", "failed", "expired"}
)


class LoginSession(BaseModel):
    login_id: str
    qr_url: str = Field(validation_alias=AliasChoices("qr_url", "wechat_qr_url"))
    state: str | None = None
    expires_in: int = 300


class LoginStatusEvent(BaseModel):
    status: LoginStatus
    code: str | None = None
    error: str | None = None
    user_id: int | None = None
    access_token: str | None = None
    refresh_token: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: object) -> object:
        if isinstance(value, str):
            return value.lower()

        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class LoginSuccessMessage(BaseModel):
    """Completion signal posted by another browsing context."""

    type: Literal["LOGIN_SUCCESS"]
    source: str
    code: str | None = None
    redirect_uri: str | None = None


class QRLoginState(str, Enum):
    INIT = "init"
    PENDING = "pending"
    SCANNED = "scanned"
    AUTHORIZING = "authorizing"
    COMPLETING = "completing"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (QRLoginState.SUCCESS, QRLoginState.FAILED, QRLoginState.EXPIRED)
