# google_auth.py
"""
End-user consent for Google Calendar access.

Each subject connects their own Google account through the standard
authorization-code flow; the resulting token pair is kept in a
CalendarTokenStore and refreshed on demand.
"""
import logging
import time
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import jwt
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.common.errors import AuthlibBaseError

from exceptions import CalendarAuthExpired, CalendarError, CalendarNotAuthorized
from models import CalendarAuthorization
from token_store import CalendarTokenStore

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar.events",
]

STATE_TTL = timedelta(minutes=15)
REFRESH_MARGIN_SECONDS = 60
ALGORITHM = "HS256"


class GoogleAuth:
    def __init__(self, store: CalendarTokenStore, client_id: Optional[str],
                 client_secret: Optional[str], redirect_uri: str, secret_key: str,
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.secret_key = secret_key
        self._transport = transport
        self._timeout = timeout

    def _client(self, **kwargs) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=" ".join(SCOPES),
            transport=self._transport,
            timeout=self._timeout,
            **kwargs,
        )

    # State handling
    def create_state(self, user_id: str) -> str:
        expire = datetime.now(timezone.utc) + STATE_TTL
        return jwt.encode({"sub": user_id, "exp": expire}, self.secret_key, algorithm=ALGORITHM)

    def read_state(self, state: Optional[str]) -> str:
        if not state:
            raise CalendarError("Missing OAuth state")
        try:
            payload = jwt.decode(state, self.secret_key, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise CalendarError("OAuth state expired, please start again")
        except jwt.InvalidTokenError:
            raise CalendarError("Invalid OAuth state")
        user_id = payload.get("sub")
        if not user_id:
            raise CalendarError("Invalid OAuth state")
        return user_id

    # Consent
    def get_auth_url(self, user_id: str) -> str:
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": self.create_state(user_id),
        }
        return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"

    async def handle_callback(self, code: str, state: Optional[str]) -> CalendarAuthorization:
        """Complete the consent flow and store the user's tokens."""
        user_id = self.read_state(state)
        try:
            async with self._client() as client:
                token = await client.fetch_token(TOKEN_URL, code=code)
                resp = await client.get(USERINFO_URL)
                resp.raise_for_status()
                email = resp.json().get("email")
        except (AuthlibBaseError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Google token exchange failed for user '{user_id}': {e}")
            raise CalendarError(f"Google authorization failed: {e}")

        record = CalendarAuthorization(
            user_id=user_id,
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            token_type=token.get("token_type", "Bearer"),
            expires_at=token.get("expires_at"),
            scopes=(token.get("scope") or " ".join(SCOPES)).split(),
            email=email,
        )
        self.store.save(record)
        logger.info(f"Successfully authenticated user '{user_id}' as {email}")
        return record

    # Status
    def is_authorized(self, user_id: str) -> bool:
        record = self.store.load(user_id)
        if record is None:
            return False
        if record.refresh_token:
            return True
        return record.expires_at is None or record.expires_at > time.time()

    def get_user_email(self, user_id: str) -> Optional[str]:
        record = self.store.load(user_id)
        return record.email if record else None

    def logout(self, user_id: str) -> bool:
        return self.store.delete(user_id)

    async def get_access_token(self, user_id: str) -> str:
        """Return a usable access token, refreshing it when close to expiry."""
        record = self.store.load(user_id)
        if record is None:
            raise CalendarNotAuthorized(user_id)
        if record.expires_at is None or record.expires_at > time.time() + REFRESH_MARGIN_SECONDS:
            return record.access_token
        if not record.refresh_token:
            raise CalendarAuthExpired()

        try:
            async with self._client() as client:
                token = await client.refresh_token(TOKEN_URL, refresh_token=record.refresh_token)
        except (AuthlibBaseError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Token refresh failed for user '{user_id}': {e}")
            raise CalendarAuthExpired()

        refreshed = record.model_copy(update={
            "access_token": token["access_token"],
            "refresh_token": token.get("refresh_token") or record.refresh_token,
            "expires_at": token.get("expires_at"),
        })
        self.store.save(refreshed)
        logger.info(f"Refreshed Google access token for user '{user_id}'")
        return refreshed.access_token
