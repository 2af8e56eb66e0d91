# models.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# OAuth records

class RegisteredClient(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret_hash: Optional[str] = None
    client_name: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list)
    token_endpoint_auth_method: str = "client_secret_post"
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    scope: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None


class AuthorizationCode(BaseModel):
    code: str
    client_id: str
    redirect_uri: str
    scope: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class AccessToken(BaseModel):
    token: str
    client_id: str
    scope: Optional[str] = None
    token_type: str = "Bearer"
    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return max(0, int((self.expires_at - self.issued_at).total_seconds()))


class CodeValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None
    scope: Optional[str] = None


class ClientRegistrationRequest(BaseModel):
    """RFC 7591 client metadata. Unknown members are ignored."""

    redirect_uris: List[str] = Field(default_factory=list)
    client_name: Optional[str] = None
    token_endpoint_auth_method: str = "client_secret_post"
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    scope: Optional[str] = None


# Calendar records and DTOs

class CalendarAuthorization(BaseModel):
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[float] = None  # unix timestamp
    scopes: List[str] = Field(default_factory=list)
    email: Optional[str] = None


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Attendee(CamelModel):
    email: str
    name: Optional[str] = None
    status: str


class PendingInvite(CamelModel):
    event_id: str
    summary: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: str
    end_time: str
    is_all_day: bool = False
    organizer_email: str
    organizer_name: Optional[str] = None
    attendees: List[Attendee] = Field(default_factory=list)
    calendar_link: str = ""


class DateRange(CamelModel):
    start: str
    end: str


class PendingInvitesResult(CamelModel):
    invites: List[PendingInvite]
    date_range: DateRange
    total_count: int


class RespondResult(CamelModel):
    success: bool = True
    message: str
    event_id: str
    new_status: str
    event_summary: Optional[str] = None


# MCP wire types

class ToolDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    title: str
    description: str
    input_schema: Dict[str, Any] = Field(alias="inputSchema")
    meta: Dict[str, Any] = Field(default_factory=dict, alias="_meta")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    jsonrpc: str = "2.0"
    result: Optional[Any] = None
    error: Optional[JsonRpcError] = None
    id: Optional[Any] = None

    def to_payload(self) -> Dict[str, Any]:
        # A response carries either result or error, never both.
        data: Dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.error is not None:
            data["error"] = self.error.model_dump(exclude_none=True)
        else:
            data["result"] = self.result
        data["id"] = self.id
        return data

    @classmethod
    def success(cls, result: Any, request_id=None) -> "JsonRpcResponse":
        return cls(result=result, id=request_id)

    @classmethod
    def failure(cls, code: int, message: str, request_id=None) -> "JsonRpcResponse":
        return cls(error=JsonRpcError(code=code, message=message), id=request_id)
