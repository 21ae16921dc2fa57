from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationInfo,
    field_validator,
)
from pydantic.alias_generators import to_camel


class UpstreamIdentity(BaseModel):
    """Attributes the upstream IdP asserts for one active browser session.

    Built from a single ``activeSessions`` entry. Validation fails closed: a
    missing or mistyped required field is rejected instead of defaulted.
    Pass ``context={"numeric_ids": True}`` to require a numeric external id.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    external_id: str = Field(
        validation_alias=AliasChoices("externalId", "wpUserId", "external_id")
    )
    email: StrictStr = Field(min_length=3, max_length=255)
    username: Optional[StrictStr] = Field(default=None, max_length=255)
    display_name: Optional[StrictStr] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("displayName", "display_name"),
    )
    roles: list[StrictStr] = Field(default_factory=list)
    avatar_url: Optional[StrictStr] = Field(
        default=None, validation_alias=AliasChoices("avatarUrl", "avatar_url")
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_external_id(cls, value: object, info: ValidationInfo) -> str:
        numeric = bool((info.context or {}).get("numeric_ids", True))
        # bool is an int subclass; True must not become user 1
        if isinstance(value, bool) or value is None:
            raise ValueError("external id must be an integer or string")
        if isinstance(value, int):
            if value <= 0:
                raise ValueError("external id must be positive")
            return str(value)
        if not isinstance(value, str):
            raise ValueError("external id must be an integer or string")
        text = value.strip()
        if not text:
            raise ValueError("external id must not be empty")
        if not numeric:
            return text
        if not text.isdecimal() or int(text) <= 0:
            raise ValueError("external id is not a positive integer")
        return str(int(text))

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        email = value.strip().lower()
        local, _, domain = email.partition("@")
        if not local or not domain:
            raise ValueError("email is malformed")
        return email

    @property
    def resolved_username(self) -> str:
        return self.username or self.email.split("@")[0]

    @property
    def resolved_display_name(self) -> str:
        return self.display_name or self.username or f"User {self.external_id}"


class UpstreamSessionsEnvelope(BaseModel):
    """Body returned by the upstream active-sessions endpoint.

    Also the body the upstream posts to us in server-to-server mode.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    success: StrictBool
    active_sessions: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("activeSessions", "active_sessions"),
    )
    error: Optional[StrictStr] = None


class SyncUser(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    email: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    avatar_url: Optional[str] = None


class SyncResponse(BaseModel):
    success: bool
    user: Optional[SyncUser] = None
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    durable: bool = True


class SessionInfoResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user: SyncUser
    session: SessionInfo
