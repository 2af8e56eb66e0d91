# tools.py
"""
Tools exposed over the protocol endpoint.

Each handler returns a tool result with a human-readable ``content`` summary
and a machine-readable ``structuredContent`` payload for the widget. Calendar
failures and bad arguments come back as ``isError`` results, never as
exceptions.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from calendar_service import CalendarService, format_invites_as_text, parse_iso
from exceptions import ToolValidationError
from models import ToolDefinition
from widgets import CALENDAR_WIDGET_URI

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], str], Awaitable[dict]]

TEMPLATE_META = {"openai/outputTemplate": CALENDAR_WIDGET_URI}


def tool_result(text: str, structured: Dict[str, Any], is_error: bool = False,
                template: bool = True) -> dict:
    result = {
        "content": [{"type": "text", "text": text}],
        "structuredContent": structured,
        "isError": is_error,
    }
    if template:
        result["_meta"] = dict(TEMPLATE_META)
    return result


def error_result(message: str, **structured) -> dict:
    return tool_result(f"Error: {message}", {"error": message, **structured},
                       is_error=True, template=False)


class ToolRegistry:
    """Name -> (definition, handler) table. New tools are added with register()."""

    def __init__(self):
        self._tools: Dict[str, Tuple[ToolDefinition, ToolHandler]] = {}

    def register(self, definition: ToolDefinition, handler: ToolHandler):
        if definition.name in self._tools:
            raise ValueError(f"Tool '{definition.name}' is already registered")
        self._tools[definition.name] = (definition, handler)

    def list_tools(self) -> List[dict]:
        return [definition.to_payload() for definition, _ in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    async def call(self, name: Optional[str], arguments: Optional[Dict[str, Any]],
                   user_id: str) -> dict:
        entry = self._tools.get(name) if name else None
        if entry is None:
            logger.warning(f"Unknown tool requested: {name}")
            return error_result(f"Unknown tool: {name}")
        _, handler = entry
        logger.info(f"Tool call: {name} for user: {user_id}")
        return await handler(arguments or {}, user_id)


# Argument models

class PendingReservationsArgs(BaseModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _iso_8601(cls, value):
        if value is not None:
            parse_iso(value)
        return value

    @model_validator(mode="after")
    def _ordered(self):
        if self.start_date and self.end_date:
            if parse_iso(self.end_date) < parse_iso(self.start_date):
                raise ValueError("end_date must not be before start_date")
        return self


class RespondToInviteArgs(BaseModel):
    event_id: str = Field(min_length=1)
    response: Literal["accepted", "declined", "tentative"]


_FIELD_MESSAGES = {
    "event_id": "event_id is required",
    "response": "response must be accepted, declined, or tentative",
    "start_date": "start_date must be an ISO 8601 date",
    "end_date": "end_date must be an ISO 8601 date",
}


def validate_arguments(model, arguments: Dict[str, Any]):
    try:
        return model.model_validate(arguments)
    except ValidationError as e:
        detail = e.errors()[0]
        field = detail["loc"][0] if detail.get("loc") else None
        message = _FIELD_MESSAGES.get(field) or detail.get("msg", "Invalid arguments")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        raise ToolValidationError(message)


# Tool catalog

GET_PENDING_RESERVATIONS = ToolDefinition(
    name="get_pending_reservations",
    title="Get Pending Reservations",
    description=(
        "Fetch pending calendar invitations that the user has not responded to. "
        "Returns a list of events where the user is an attendee but has not accepted, "
        "declined, or marked as tentative."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "start_date": {
                "type": "string",
                "description": 'Start date for the search range in ISO 8601 format '
                               '(e.g., "2024-01-15T00:00:00Z"). Defaults to now.',
            },
            "end_date": {
                "type": "string",
                "description": 'End date for the search range in ISO 8601 format '
                               '(e.g., "2024-01-30T23:59:59Z"). Defaults to 14 days from now.',
            },
        },
        "required": [],
        "additionalProperties": False,
    },
    _meta={
        **TEMPLATE_META,
        "openai/visibility": "public",
        "openai/widgetAccessible": True,
    },
)

RESPOND_TO_INVITE = ToolDefinition(
    name="respond_to_invite",
    title="Respond to Invite",
    description=(
        "Respond to a pending calendar invitation. You can accept, decline, "
        "or mark the invitation as tentative."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "event_id": {
                "type": "string",
                "description": "The unique identifier of the calendar event to respond to.",
            },
            "response": {
                "type": "string",
                "enum": ["accepted", "declined", "tentative"],
                "description": 'The response to send: "accepted" to accept the invite, '
                               '"declined" to decline, or "tentative" to indicate you might attend.',
            },
        },
        "required": ["event_id", "response"],
        "additionalProperties": False,
    },
    _meta={
        **TEMPLATE_META,
        "openai/visibility": "public",
        "openai/widgetAccessible": False,
    },
)

CHECK_AUTH_STATUS = ToolDefinition(
    name="check_auth_status",
    title="Check Auth Status",
    description=(
        "Check if the user is authenticated with Google Calendar. Returns authentication "
        "status and provides an auth URL if not authenticated."
    ),
    inputSchema={
        "type": "object",
        "properties": {},
        "required": [],
        "additionalProperties": False,
    },
    _meta={
        **TEMPLATE_META,
        "openai/visibility": "public",
        # the widget polls this while the user completes consent
        "openai/widgetAccessible": True,
    },
)


class CalendarTools:
    def __init__(self, calendar: CalendarService, timeout: float = 30):
        self.calendar = calendar
        self.timeout = timeout

    def register(self, registry: ToolRegistry):
        registry.register(GET_PENDING_RESERVATIONS, self.get_pending_reservations)
        registry.register(RESPOND_TO_INVITE, self.respond_to_invite)
        registry.register(CHECK_AUTH_STATUS, self.check_auth_status)

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Calendar request timed out after {self.timeout:g}s")

    async def get_pending_reservations(self, arguments: Dict[str, Any], user_id: str) -> dict:
        try:
            args = validate_arguments(PendingReservationsArgs, arguments)
        except ToolValidationError as e:
            return error_result(str(e))

        if not self.calendar.is_authorized(user_id):
            return tool_result(
                "User needs to authenticate with Google Calendar.",
                {"authRequired": True, "authUrl": self.calendar.get_consent_url(user_id)},
            )

        try:
            result = await self._bounded(
                self.calendar.list_pending_invites(user_id, args.start_date, args.end_date)
            )
        except Exception as e:
            logger.error(f"get_pending_reservations failed for user '{user_id}': {e}")
            return error_result(str(e))

        payload = result.to_payload()
        return tool_result(
            format_invites_as_text(result.invites),
            {
                "invites": payload["invites"],
                "dateRange": payload["dateRange"],
                "totalCount": payload["totalCount"],
            },
        )

    async def respond_to_invite(self, arguments: Dict[str, Any], user_id: str) -> dict:
        try:
            args = validate_arguments(RespondToInviteArgs, arguments)
        except ToolValidationError as e:
            return error_result(str(e), success=False)

        if not self.calendar.is_authorized(user_id):
            return tool_result(
                "User needs to authenticate first.",
                {"authRequired": True, "authUrl": self.calendar.get_consent_url(user_id),
                 "success": False},
                is_error=True,
            )

        try:
            result = await self._bounded(
                self.calendar.respond_to_event(user_id, args.event_id, args.response)
            )
        except Exception as e:
            logger.error(f"respond_to_invite failed for user '{user_id}', event '{args.event_id}': {e}")
            return error_result(str(e), success=False)

        action = "marked as tentative" if args.response == "tentative" else args.response
        return tool_result(
            f"Successfully {action} the invitation.",
            {
                "success": True,
                "response": args.response,
                "eventId": args.event_id,
                "message": result.message,
                "eventSummary": result.event_summary,
            },
        )

    async def check_auth_status(self, arguments: Dict[str, Any], user_id: str) -> dict:
        if self.calendar.is_authorized(user_id):
            return tool_result(
                "User is connected to Google Calendar.",
                {"authenticated": True, "email": self.calendar.get_user_email(user_id)},
            )
        return tool_result(
            "User needs to connect Google Calendar.",
            {"authenticated": False, "authUrl": self.calendar.get_consent_url(user_id)},
        )


def build_tool_registry(calendar: CalendarService, timeout: float = 30) -> ToolRegistry:
    registry = ToolRegistry()
    CalendarTools(calendar, timeout=timeout).register(registry)
    return registry
