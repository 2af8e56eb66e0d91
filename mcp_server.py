# mcp_server.py
"""
JSON-RPC dispatcher for the protocol endpoint.

Methods are looked up in a name -> coroutine table; lifecycle, tool,
resource and the unimplemented prompt/completion/logging families are
registered at construction and more can be added with register_method().
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from exceptions import InvalidEnvelope, InvalidParams, McpError, PromptNotFound, UnknownMethod
from models import JsonRpcResponse
from tools import ToolRegistry
from widgets import WidgetCatalog

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2024-11-05"
DEFAULT_SUBJECT = "default"
SUBJECT_META_KEY = "openai/subject"

AUTH_REQUIRED_CODE = -32001
PARSE_ERROR_CODE = -32700

SERVER_INFO = {
    "name": "reservations-manager",
    "version": "1.0.0",
}

SERVER_CAPABILITIES = {
    "tools": {"listChanged": False},
    "resources": {"subscribe": False, "listChanged": False},
    "experimental": {"openai/visibility": {"enabled": True}},
}

INSTRUCTIONS = (
    "This server manages Google Calendar reservations. Use get_pending_reservations to list "
    "pending calendar invites (will prompt for authentication if needed), and "
    "respond_to_invite to accept/decline invitations."
)

MethodHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class McpDispatcher:
    def __init__(self, tools: ToolRegistry, widgets: WidgetCatalog,
                 allow_default_subject: bool = True, default_subject: str = DEFAULT_SUBJECT):
        self.tools = tools
        self.widgets = widgets
        self.allow_default_subject = allow_default_subject
        self.default_subject = default_subject
        self._methods: Dict[str, MethodHandler] = {}

        # lifecycle
        self.register_method("initialize", self.initialize)
        self.register_method("initialized", self._acknowledge)
        self.register_method("notifications/initialized", self._acknowledge)
        self.register_method("ping", self.ping)
        self.register_method("shutdown", self._acknowledge)
        # tools
        self.register_method("tools/list", self.list_tools)
        self.register_method("tools/call", self.call_tool)
        # resources
        self.register_method("resources/list", self.list_resources)
        self.register_method("resources/read", self.read_resource)
        self.register_method("resources/templates/list", self.list_resource_templates)
        # not implemented: answer with empty results
        self.register_method("prompts/list", self.list_prompts)
        self.register_method("prompts/get", self.get_prompt)
        self.register_method("completion/complete", self.complete)
        self.register_method("logging/setLevel", self._acknowledge)

    def register_method(self, name: str, handler: MethodHandler):
        self._methods[name] = handler

    def methods(self):
        return sorted(self._methods)

    def extract_subject(self, params: Dict[str, Any]) -> str:
        """The end-user a call acts for, taken from the call's _meta."""
        meta = params.get("_meta")
        subject = meta.get(SUBJECT_META_KEY) if isinstance(meta, dict) else None
        if isinstance(subject, str) and subject:
            return subject
        if not self.allow_default_subject:
            raise InvalidParams(f"Missing {SUBJECT_META_KEY} in request _meta")
        logger.warning("No user ID found in request, using default")
        return self.default_subject

    async def dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            logger.warning(f"Unknown MCP method: {method}")
            raise UnknownMethod(method)
        return await handler(params)

    async def handle(self, body: Any) -> JsonRpcResponse:
        """Answer one JSON-RPC envelope. Never raises."""
        if not isinstance(body, dict):
            return JsonRpcResponse.failure(InvalidEnvelope.code, "Invalid request: expected an object")
        request_id = body.get("id")
        method = body.get("method")
        if not isinstance(method, str) or not method:
            return JsonRpcResponse.failure(InvalidEnvelope.code, "Invalid request: missing method",
                                           request_id)
        params = body.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return JsonRpcResponse.failure(InvalidParams.code, "Invalid params: expected an object",
                                           request_id)

        logger.info(f"MCP method called: {method}")
        try:
            result = await self.dispatch(method, params)
        except McpError as e:
            return JsonRpcResponse.failure(e.code, e.message, request_id)
        except Exception as e:
            logger.exception(f"MCP error in {method}")
            return JsonRpcResponse.failure(McpError.code, str(e) or e.__class__.__name__, request_id)
        return JsonRpcResponse.success(result, request_id)

    # Lifecycle
    async def initialize(self, params: Dict[str, Any]) -> dict:
        client_info = params.get("clientInfo")
        protocol_version = params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION
        logger.info(f"MCP initialize from client: {client_info}, protocol: {protocol_version}")
        return {
            "protocolVersion": protocol_version,
            "serverInfo": SERVER_INFO,
            "capabilities": SERVER_CAPABILITIES,
            "instructions": INSTRUCTIONS,
        }

    async def _acknowledge(self, params: Dict[str, Any]) -> dict:
        return {}

    async def ping(self, params: Dict[str, Any]) -> dict:
        return {"status": "ok"}

    # Tools
    async def list_tools(self, params: Dict[str, Any]) -> dict:
        return {"tools": self.tools.list_tools()}

    async def call_tool(self, params: Dict[str, Any]) -> dict:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParams("Invalid params: tool name is required")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidParams("Invalid params: arguments must be an object")
        user_id = self.extract_subject(params)
        return await self.tools.call(name, arguments, user_id)

    # Resources
    async def list_resources(self, params: Dict[str, Any]) -> dict:
        return {"resources": self.widgets.list_resources()}

    async def read_resource(self, params: Dict[str, Any]) -> dict:
        uri: Optional[str] = params.get("uri")
        logger.info(f"Reading resource: {uri}")
        return self.widgets.read(uri if isinstance(uri, str) else None)

    async def list_resource_templates(self, params: Dict[str, Any]) -> dict:
        return {"resourceTemplates": []}

    # Prompts, completion
    async def list_prompts(self, params: Dict[str, Any]) -> dict:
        return {"prompts": []}

    async def get_prompt(self, params: Dict[str, Any]) -> dict:
        raise PromptNotFound(params.get("name"))

    async def complete(self, params: Dict[str, Any]) -> dict:
        return {"completion": {"values": []}}
