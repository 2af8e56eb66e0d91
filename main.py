# main.py
import sys

from fastapi import FastAPI, Request, Depends, HTTPException
from fastapi.responses import RedirectResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import base64
import binascii
import json
import logging
import urllib.parse

from calendar_service import CalendarService, RESPONSE_STATUSES
from credential_manager import CredentialManager
from exceptions import (CalendarError, InvalidClient, InvalidClientMetadata, InvalidEnvelope, InvalidRequest,
                        OAuthError, TokenInvalid)
from google_auth import GoogleAuth
from mcp_server import AUTH_REQUIRED_CODE, PARSE_ERROR_CODE, McpDispatcher, DEFAULT_SUBJECT
from models import JsonRpcResponse
from oauth_server import AuthorizationServer, ClientRegistrar, SUPPORTED_SCOPES
from token_registry import TokenRegistry
from token_store import CalendarTokenStore
from tools import build_tool_registry
from widgets import WidgetCatalog

# Configure logging to write to stdout only
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s %(levelname)s %(message)s',
                    handlers=[
                        logging.StreamHandler(sys.stdout)
                    ])

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class OriginLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get('origin')
        logger.info(f"{request.method} {request.url.path} from origin: {origin}")
        response = await call_next(request)
        return response


app = FastAPI(title="Reservations Manager", version=VERSION)

# Add this middleware before CORSMiddleware
app.add_middleware(OriginLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CredentialManager.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["WWW-Authenticate", "MCP-Protocol-Version"],
)

BASE_URL = CredentialManager.get_base_url()
RESOURCE_URL = CredentialManager.get_resource_url()

ttls = CredentialManager.get_token_ttls()
registry = TokenRegistry(
    access_token_ttl=timedelta(seconds=ttls['access_token']),
    code_ttl=timedelta(seconds=ttls['authorization_code']),
)
auth_server = AuthorizationServer(registry, issuer=BASE_URL)
client_registrar = ClientRegistrar(registry)

google_credentials = CredentialManager.get_google_credentials()
token_store = CalendarTokenStore(CredentialManager.get_token_store_path())
google_auth = GoogleAuth(
    token_store,
    client_id=google_credentials['client_id'],
    client_secret=google_credentials['client_secret'],
    redirect_uri=google_credentials['redirect_uri'],
    secret_key=CredentialManager.get_secret_key(),
)
calendar_service = CalendarService(google_auth, timeout=CredentialManager.get_calendar_timeout())
tool_registry = build_tool_registry(calendar_service, timeout=CredentialManager.get_calendar_timeout())
dispatcher = McpDispatcher(
    tool_registry,
    WidgetCatalog(CredentialManager.get_widget_base_url()),
    allow_default_subject=CredentialManager.allow_default_subject(),
)


@app.on_event("startup")
async def startup():
    preconfigured = CredentialManager.get_preconfigured_client()
    if preconfigured and registry.get_client(preconfigured['client_id']) is None:
        try:
            registry.seed_client(**preconfigured)
        except ValueError as e:
            logger.error(e)

    missing = CredentialManager.get_missing_google_vars()
    if missing:
        logger.warning(f"Google Calendar consent disabled, missing environment variables: "
                       f"{', '.join(missing)}")
    logger.info(f"Reservations manager started, issuer {BASE_URL}, resource {RESOURCE_URL}")
    logger.info(f"Tools: {', '.join(tool_registry.names())}; "
                f"protocol methods: {', '.join(dispatcher.methods())}")
    logger.info(f"{len(token_store.list_users())} users have a stored calendar authorization")


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    logger.error(f"OAuth error on {request.url.path}: {exc.error} {exc.description}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(),
                        headers={**NO_STORE, **exc.headers})


# Utility functions
def get_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get('authorization') or ''
    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def authenticate(request: Request):
    token = get_bearer_token(request)
    if token is None:
        raise TokenInvalid("Missing bearer token")
    record = registry.get_access_token(token)
    if record is None:
        raise TokenInvalid("Invalid or expired bearer token")
    return record


def parse_basic_auth(request: Request) -> Optional[Tuple[str, str]]:
    """Client credentials from an HTTP Basic header, or None when absent."""
    authorization = request.headers.get('authorization') or ''
    scheme, _, encoded = authorization.partition(' ')
    if scheme.lower() != 'basic':
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClient("Malformed Basic credentials",
                            headers={"WWW-Authenticate": 'Basic realm="oauth"'})
    client_id, sep, client_secret = decoded.partition(':')
    if not sep:
        raise InvalidClient("Malformed Basic credentials",
                            headers={"WWW-Authenticate": 'Basic realm="oauth"'})
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(client_secret)


async def read_params(request: Request) -> dict:
    """Token request parameters from a form body, or a JSON body when so declared."""
    content_type = request.headers.get('content-type', '')
    if content_type.startswith('application/json'):
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return {k: str(v) for k, v in body.items() if v is not None}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def auth_challenge() -> str:
    return f'Bearer resource="{RESOURCE_URL}", as_uri="{BASE_URL}"'


async def get_subject(request: Request, user_id: Optional[str] = None) -> str:
    """
    The calendar owner for a REST mirror call. Without a bearer token only the
    default subject is served; naming any other subject requires a valid token.
    """
    if not user_id or user_id == DEFAULT_SUBJECT:
        return DEFAULT_SUBJECT
    try:
        authenticate(request)
    except TokenInvalid as e:
        logger.warning(f"Rejected REST call for subject '{user_id}': {e}")
        raise HTTPException(status_code=401, detail="Not authenticated",
                            headers={"WWW-Authenticate": auth_challenge()})
    return user_id


# Discovery routes

@app.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata():
    return auth_server.metadata()


@app.get("/.well-known/openid-configuration")
async def openid_configuration():
    return auth_server.openid_configuration()


@app.get("/.well-known/oauth-protected-resource")
@app.get("/.well-known/oauth-protected-resource/mcp")
async def protected_resource_metadata():
    return {
        "resource": RESOURCE_URL,
        "authorization_servers": [BASE_URL],
        "bearer_methods_supported": ["header"],
        "scopes_supported": SUPPORTED_SCOPES,
    }


# OAuth routes

@app.post("/oauth/register")
async def register_client(request: Request):
    try:
        metadata = await request.json()
    except ValueError:
        raise InvalidClientMetadata("Registration body must be valid JSON")
    response = client_registrar.register(metadata)
    return JSONResponse(status_code=201, content=response, headers=NO_STORE)


@app.get("/oauth/authorize")
async def authorize(request: Request):
    params = request.query_params
    location = auth_server.authorize(
        client_id=params.get('client_id'),
        redirect_uri=params.get('redirect_uri'),
        response_type=params.get('response_type'),
        state=params.get('state'),
        scope=params.get('scope'),
        code_challenge=params.get('code_challenge'),
        code_challenge_method=params.get('code_challenge_method'),
    )
    logger.info(f"Authorization code issued for client '{params.get('client_id')}'")
    return RedirectResponse(url=location, status_code=302)


@app.post("/oauth/token")
async def token(request: Request):
    params = await read_params(request)
    client_id = params.get('client_id')
    client_secret = params.get('client_secret')
    basic = parse_basic_auth(request)
    if basic:
        basic_id, client_secret = basic
        if client_id and client_id != basic_id:
            raise InvalidRequest("client_id does not match the Basic credentials")
        client_id = basic_id

    logger.info(f"Token request: grant_type={params.get('grant_type')}, client_id={client_id}")
    response = auth_server.token(
        grant_type=params.get('grant_type'),
        client_id=client_id,
        client_secret=client_secret,
        code=params.get('code'),
        redirect_uri=params.get('redirect_uri'),
        code_verifier=params.get('code_verifier'),
        scope=params.get('scope'),
        basic_auth=basic is not None,
    )
    return JSONResponse(content=response, headers=NO_STORE)


# Protocol endpoint

@app.post("/mcp")
async def mcp(request: Request):
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
        parsed = True
    except ValueError:
        body = None
        parsed = False
    request_id = body.get('id') if isinstance(body, dict) else None

    headers = {}
    protocol_version = request.headers.get('mcp-protocol-version')
    if protocol_version:
        headers['MCP-Protocol-Version'] = protocol_version

    try:
        authenticate(request)
    except TokenInvalid as e:
        logger.warning(f"Rejected protocol call: {e}")
        reply = JsonRpcResponse.failure(AUTH_REQUIRED_CODE, "Authentication required", request_id)
        headers['WWW-Authenticate'] = auth_challenge()
        return JSONResponse(status_code=401, content=reply.to_payload(), headers=headers)

    if not parsed:
        reply = JsonRpcResponse.failure(PARSE_ERROR_CODE, "Parse error")
        return JSONResponse(status_code=400, content=reply.to_payload(), headers=headers)

    reply = await dispatcher.handle(body)
    status_code = 400 if reply.error is not None and reply.error.code == InvalidEnvelope.code else 200
    return JSONResponse(status_code=status_code, content=reply.to_payload(), headers=headers)


# Health and calendar consent routes

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@app.get("/auth/status")
async def auth_status(user_id: str = Depends(get_subject)):
    if calendar_service.is_authorized(user_id):
        return {"authenticated": True, "email": calendar_service.get_user_email(user_id)}
    return {"authenticated": False, "authUrl": calendar_service.get_consent_url(user_id)}


@app.get("/auth/google")
async def auth_google(user_id: str = Depends(get_subject)):
    return RedirectResponse(url=google_auth.get_auth_url(user_id), status_code=302)


@app.get("/oauth/callback")
async def google_callback(code: Optional[str] = None, state: Optional[str] = None,
                          error: Optional[str] = None):
    if error:
        logger.error(f"Google OAuth error: {error}")
        return RedirectResponse(url="/?error=oauth_error", status_code=302)
    if not code:
        return RedirectResponse(url="/?error=no_code", status_code=302)
    try:
        await google_auth.handle_callback(code, state)
    except CalendarError as e:
        logger.error(f"Google OAuth callback failed: {e}")
        message = urllib.parse.quote(str(e), safe='')
        return RedirectResponse(url=f"/?error=auth_failed&message={message}", status_code=302)
    return RedirectResponse(url="/?auth=success", status_code=302)


@app.post("/auth/logout")
async def logout(user_id: str = Depends(get_subject)):
    google_auth.logout(user_id)
    return {"success": True, "message": "Logged out successfully"}


def not_connected(user_id: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={
        "success": False,
        "error": "Not authenticated",
        "authUrl": calendar_service.get_consent_url(user_id),
    })


@app.get("/api/pending-invites")
async def pending_invites(start_date: Optional[str] = None, end_date: Optional[str] = None,
                          user_id: str = Depends(get_subject)):
    if not calendar_service.is_authorized(user_id):
        return not_connected(user_id)
    try:
        result = await calendar_service.list_pending_invites(user_id, start_date, end_date)
    except Exception as e:
        logger.error(f"Error fetching invites: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "data": result.to_payload()}


@app.post("/api/respond")
async def respond(request: Request, user_id: str = Depends(get_subject)):
    if not calendar_service.is_authorized(user_id):
        return not_connected(user_id)
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    event_id = body.get('eventId')
    response = body.get('response')
    if not event_id or not response:
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": "Missing required fields: eventId, response",
        })
    if response not in RESPONSE_STATUSES:
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": "Invalid response. Must be: accepted, declined, or tentative",
        })
    try:
        result = await calendar_service.respond_to_event(user_id, event_id, response)
    except Exception as e:
        logger.error(f"Error responding to invite: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "data": result.to_payload()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3000)
