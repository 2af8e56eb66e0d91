# token_registry.py
import hmac
import logging
import secrets
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import urlparse

from authlib.oauth2.rfc7636 import create_s256_code_challenge
from passlib.context import CryptContext

from exceptions import InvalidClientMetadata, UnknownClient
from models import AccessToken, AuthorizationCode, CodeValidation, RegisteredClient

logger = logging.getLogger(__name__)

# Client secrets are stored hashed; the plaintext is only returned at registration.
secret_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

PUBLIC_AUTH_METHOD = "none"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _prefix(value: Optional[str]) -> str:
    return f"{value[:6]}..." if value else "<none>"


def is_absolute_uri(uri) -> bool:
    if not isinstance(uri, str) or not uri:
        return False
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc) and not parsed.fragment


class TokenRegistry:
    """
    In-memory store for registered clients, authorization codes and access tokens.

    Every read-modify-write runs under a single lock, so the consume step of an
    authorization code can never succeed twice for the same code.
    """

    def __init__(self,
                 access_token_ttl: timedelta = timedelta(hours=1),
                 code_ttl: timedelta = timedelta(minutes=10),
                 clock: Callable[[], datetime] = _now,
                 purge_interval: timedelta = timedelta(minutes=5)):
        self.access_token_ttl = access_token_ttl
        self.code_ttl = code_ttl
        self.purge_interval = purge_interval
        self._clock = clock
        self._last_purge = clock()
        self._lock = threading.Lock()
        self._clients: Dict[str, RegisteredClient] = {}
        self._codes: Dict[str, AuthorizationCode] = {}
        self._tokens: Dict[str, AccessToken] = {}

    # Client methods
    def add_client(self, client: RegisteredClient):
        with self._lock:
            if client.client_id in self._clients:
                raise ValueError(f"OAuth2 client with ID '{client.client_id}' already exists.")
            self._clients[client.client_id] = client
        logger.info(f"Added OAuth2 client with ID: {client.client_id}")

    def seed_client(self, client_id: str, client_secret: Optional[str] = None,
                    redirect_uris: Iterable[str] = ()) -> RegisteredClient:
        """
        Register a client with a known identifier, as configured by the operator.
        """
        grant_types = ["client_credentials"] if client_secret else []
        if redirect_uris:
            grant_types.append("authorization_code")
        client = RegisteredClient(
            client_id=client_id,
            client_secret_hash=secret_context.hash(client_secret) if client_secret else None,
            client_name=client_id,
            redirect_uris=list(redirect_uris),
            token_endpoint_auth_method="client_secret_basic" if client_secret else PUBLIC_AUTH_METHOD,
            grant_types=grant_types,
        )
        self.add_client(client)
        return client

    def register_client(self, redirect_uris, client_name: Optional[str] = None,
                        public: bool = False,
                        grant_types: Optional[Iterable[str]] = None,
                        token_endpoint_auth_method: Optional[str] = None,
                        scope: Optional[str] = None) -> Tuple[RegisteredClient, Optional[str]]:
        """
        Create a new client identity. Returns the client and its plaintext secret
        (None for public clients).
        """
        if not redirect_uris:
            raise InvalidClientMetadata("redirect_uris is required")
        for uri in redirect_uris:
            if not is_absolute_uri(uri):
                raise InvalidClientMetadata(f"Invalid redirect_uri: {uri}")

        client_secret = None if public else secrets.token_urlsafe(32)
        if token_endpoint_auth_method is None:
            token_endpoint_auth_method = PUBLIC_AUTH_METHOD if public else "client_secret_post"

        with self._lock:
            client_id = str(uuid.uuid4())
            while client_id in self._clients:
                client_id = str(uuid.uuid4())
            client = RegisteredClient(
                client_id=client_id,
                client_secret_hash=secret_context.hash(client_secret) if client_secret else None,
                client_name=client_name,
                redirect_uris=list(redirect_uris),
                token_endpoint_auth_method=token_endpoint_auth_method,
                grant_types=list(grant_types or ["authorization_code"]),
                scope=scope,
            )
            self._clients[client_id] = client
        logger.info(f"Registered OAuth2 client '{client_name or client_id}' with ID: {client_id}")
        return client, client_secret

    def get_client(self, client_id: Optional[str]) -> Optional[RegisteredClient]:
        client = self._clients.get(client_id) if client_id else None
        logger.info(f"Fetched OAuth2 client by ID '{client_id}': {'Found' if client else 'Not Found'}")
        return client

    def verify_client_secret(self, client_id: str, client_secret: Optional[str]) -> bool:
        client = self._clients.get(client_id)
        if client is None or not client.is_confidential or not client_secret:
            return False
        return secret_context.verify(client_secret, client.client_secret_hash)

    # Authorization code methods
    def issue_authorization_code(self, client_id: str, redirect_uri: str,
                                 code_challenge: Optional[str] = None,
                                 code_challenge_method: Optional[str] = None,
                                 scope: Optional[str] = None) -> str:
        if client_id not in self._clients:
            raise UnknownClient(client_id)
        if code_challenge and not code_challenge_method:
            code_challenge_method = "S256"

        self._maybe_purge()
        now = self._clock()
        code = secrets.token_urlsafe(32)
        with self._lock:
            self._codes[code] = AuthorizationCode(
                code=code,
                client_id=client_id,
                redirect_uri=redirect_uri,
                scope=scope,
                code_challenge=code_challenge or None,
                code_challenge_method=code_challenge_method if code_challenge else None,
                issued_at=now,
                expires_at=now + self.code_ttl,
            )
        logger.info(f"Saved authorization code '{_prefix(code)}' for client '{client_id}'")
        return code

    def consume_authorization_code(self, code: str, client_id: str, redirect_uri: str,
                                   code_verifier: Optional[str] = None) -> CodeValidation:
        with self._lock:
            # Any redemption attempt burns the code, successful or not.
            auth_code = self._codes.pop(code, None) if code else None
        if auth_code is None:
            return self._rejected(code, "unknown authorization code")
        if auth_code.expires_at <= self._clock():
            return self._rejected(code, "authorization code expired")
        reason = _mismatch(auth_code, client_id, redirect_uri, code_verifier)
        if reason:
            return self._rejected(code, reason)
        logger.info(f"Consumed authorization code '{_prefix(code)}' for client '{client_id}'")
        return CodeValidation(valid=True, scope=auth_code.scope)

    @staticmethod
    def _rejected(code: Optional[str], reason: str) -> CodeValidation:
        logger.warning(f"Rejected authorization code '{_prefix(code)}': {reason}")
        return CodeValidation(valid=False, reason=reason)

    # Access token methods
    def issue_access_token(self, client_id: str, scope: Optional[str] = None) -> AccessToken:
        self._maybe_purge()
        now = self._clock()
        token = AccessToken(
            token=secrets.token_urlsafe(32),
            client_id=client_id,
            scope=scope,
            issued_at=now,
            expires_at=now + self.access_token_ttl,
        )
        with self._lock:
            self._tokens[token.token] = token
        logger.info(f"Issued access token '{_prefix(token.token)}' for client '{client_id}'")
        return token

    def get_access_token(self, token: Optional[str]) -> Optional[AccessToken]:
        if not token:
            return None
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return None
            if self._clock() >= record.expires_at:
                del self._tokens[token]
                logger.info(f"Access token '{_prefix(token)}' expired")
                return None
            return record

    def validate_access_token(self, token: Optional[str]) -> bool:
        return self.get_access_token(token) is not None

    def _maybe_purge(self):
        if self._clock() - self._last_purge >= self.purge_interval:
            self.purge_expired()

    def purge_expired(self) -> int:
        """Drop expired codes and tokens. Returns the number removed."""
        now = self._clock()
        with self._lock:
            self._last_purge = now
            codes = [k for k, v in self._codes.items() if v.expires_at <= now]
            tokens = [k for k, v in self._tokens.items() if v.expires_at <= now]
            for k in codes:
                del self._codes[k]
            for k in tokens:
                del self._tokens[k]
        removed = len(codes) + len(tokens)
        if removed:
            logger.info(f"Purged {len(codes)} authorization codes and {len(tokens)} access tokens")
        return removed


def _mismatch(auth_code: AuthorizationCode, client_id: str, redirect_uri: str,
              code_verifier: Optional[str]) -> Optional[str]:
    if auth_code.client_id != client_id:
        return "client_id does not match"
    if auth_code.redirect_uri != redirect_uri:
        return "redirect_uri does not match"
    if auth_code.code_challenge:
        if not code_verifier:
            return "code_verifier required"
        if not verify_code_challenge(code_verifier, auth_code.code_challenge,
                                     auth_code.code_challenge_method):
            return "invalid code_verifier"
    return None


def verify_code_challenge(code_verifier: str, code_challenge: str,
                          method: Optional[str] = "S256") -> bool:
    if method not in (None, "S256"):
        return False
    try:
        expected = create_s256_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode(), code_challenge.encode())
