# oauth_server.py
"""
Authorization-code (with PKCE) and client-credentials grants, plus RFC 7591
dynamic client registration, on top of a TokenRegistry.
"""
import logging
import urllib.parse
from typing import Optional

from pydantic import ValidationError

from exceptions import (InvalidClient, InvalidClientMetadata, InvalidGrant, InvalidRequest,
                        UnknownClient, UnsupportedGrantType, UnsupportedResponseType)
from models import ClientRegistrationRequest
from token_registry import PUBLIC_AUTH_METHOD, TokenRegistry

logger = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = ["authorization_code", "client_credentials"]
SUPPORTED_RESPONSE_TYPES = ["code"]
SUPPORTED_CHALLENGE_METHODS = ["S256"]
SUPPORTED_AUTH_METHODS = ["client_secret_post", "client_secret_basic", PUBLIC_AUTH_METHOD]
SUPPORTED_SCOPES = ["calendar"]


def append_query(uri: str, params: dict) -> str:
    """Add query parameters to a URI, keeping any it already has."""
    parts = urllib.parse.urlsplit(uri)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class AuthorizationServer:
    def __init__(self, registry: TokenRegistry, issuer: str):
        self.registry = registry
        self.issuer = issuer.rstrip('/')

    def metadata(self) -> dict:
        """RFC 8414 authorization server metadata."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/oauth/authorize",
            "token_endpoint": f"{self.issuer}/oauth/token",
            "registration_endpoint": f"{self.issuer}/oauth/register",
            "response_types_supported": SUPPORTED_RESPONSE_TYPES,
            "grant_types_supported": SUPPORTED_GRANT_TYPES,
            "code_challenge_methods_supported": SUPPORTED_CHALLENGE_METHODS,
            "token_endpoint_auth_methods_supported": SUPPORTED_AUTH_METHODS,
            "scopes_supported": SUPPORTED_SCOPES,
        }

    def openid_configuration(self) -> dict:
        config = self.metadata()
        config.update({
            "subject_types_supported": ["public"],
            "response_modes_supported": ["query"],
            "claims_supported": ["sub"],
        })
        return config

    def authorize(self, client_id: Optional[str], redirect_uri: Optional[str],
                  response_type: Optional[str], state: Optional[str] = None,
                  scope: Optional[str] = None, code_challenge: Optional[str] = None,
                  code_challenge_method: Optional[str] = None) -> str:
        """
        Validate an authorization request and issue a code.

        Returns the redirect target carrying ``code`` and, when supplied, ``state``.
        Nothing is stored unless every check passes.
        """
        if not client_id:
            raise InvalidRequest("client_id is required")
        client = self.registry.get_client(client_id)
        if not client:
            logger.error(f"Invalid client_id: {client_id}")
            raise UnknownClient(client_id)
        if response_type != 'code':
            logger.error(f"Unsupported response_type: {response_type}")
            raise UnsupportedResponseType(f"Unsupported response_type: {response_type}")
        if not redirect_uri:
            raise InvalidRequest("redirect_uri is required")
        if redirect_uri not in client.redirect_uris:
            logger.error(f"Invalid redirect_uri: {redirect_uri}")
            raise InvalidRequest("redirect_uri is not registered for this client")
        if code_challenge_method and not code_challenge:
            raise InvalidRequest("code_challenge_method given without code_challenge")
        if code_challenge and (code_challenge_method or "S256") not in SUPPORTED_CHALLENGE_METHODS:
            logger.error(f"Unsupported code_challenge_method: {code_challenge_method}")
            raise InvalidRequest("Only the S256 code_challenge_method is supported")

        code = self.registry.issue_authorization_code(
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scope=scope,
        )
        params = {'code': code}
        if state is not None:
            params['state'] = state
        return append_query(redirect_uri, params)

    def token(self, grant_type: Optional[str], client_id: Optional[str] = None,
              client_secret: Optional[str] = None, code: Optional[str] = None,
              redirect_uri: Optional[str] = None, code_verifier: Optional[str] = None,
              scope: Optional[str] = None, basic_auth: bool = False) -> dict:
        """Exchange a grant for an access token response body."""
        if grant_type == 'authorization_code':
            return self._authorization_code_grant(client_id, client_secret, code,
                                                  redirect_uri, code_verifier, basic_auth)
        if grant_type == 'client_credentials':
            return self._client_credentials_grant(client_id, client_secret, scope, basic_auth)
        logger.error(f"Unsupported grant_type: {grant_type}")
        raise UnsupportedGrantType(f"Unsupported grant_type: {grant_type}")

    def _authorization_code_grant(self, client_id, client_secret, code, redirect_uri,
                                  code_verifier, basic_auth) -> dict:
        if not code or not redirect_uri or not client_id:
            logger.error("Missing parameters in token request")
            raise InvalidRequest("code, redirect_uri and client_id are required")

        client = self.registry.get_client(client_id)
        if client is None:
            raise InvalidGrant("Invalid authorization code")
        # A public client presents no secret; a confidential one that does must get it right.
        if client_secret and not self.registry.verify_client_secret(client_id, client_secret):
            raise self._invalid_client("Client authentication failed", basic_auth)

        result = self.registry.consume_authorization_code(code, client_id, redirect_uri, code_verifier)
        if not result.valid:
            raise InvalidGrant(result.reason)
        return self._token_response(client_id, result.scope)

    def _client_credentials_grant(self, client_id, client_secret, scope, basic_auth) -> dict:
        if not client_id or not client_secret:
            raise self._invalid_client("Client credentials are required", basic_auth)
        if not self.registry.verify_client_secret(client_id, client_secret):
            logger.error(f"Client authentication failed for client_id: {client_id}")
            raise self._invalid_client("Client authentication failed", basic_auth)
        return self._token_response(client_id, scope)

    def _token_response(self, client_id: str, scope: Optional[str]) -> dict:
        token = self.registry.issue_access_token(client_id, scope)
        body = {
            "access_token": token.token,
            "token_type": token.token_type,
            "expires_in": token.expires_in,
        }
        if scope:
            body["scope"] = scope
        return body

    @staticmethod
    def _invalid_client(description: str, basic_auth: bool) -> InvalidClient:
        headers = {"WWW-Authenticate": 'Basic realm="oauth"'} if basic_auth else None
        return InvalidClient(description, headers=headers)


class ClientRegistrar:
    """RFC 7591 dynamic client registration. Every call creates a new identity."""

    def __init__(self, registry: TokenRegistry):
        self.registry = registry

    def register(self, metadata) -> dict:
        if not isinstance(metadata, dict):
            raise InvalidClientMetadata("Registration body must be a JSON object")
        try:
            request = ClientRegistrationRequest.model_validate(metadata)
        except ValidationError as e:
            raise InvalidClientMetadata(_first_error(e))

        auth_method = request.token_endpoint_auth_method
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise InvalidClientMetadata(f"Unsupported token_endpoint_auth_method: {auth_method}")
        grant_types = request.grant_types or ["authorization_code"]
        unsupported = [g for g in grant_types if g not in SUPPORTED_GRANT_TYPES]
        if unsupported:
            raise InvalidClientMetadata(f"Unsupported grant_types: {', '.join(unsupported)}")
        public = auth_method == PUBLIC_AUTH_METHOD
        if public and "client_credentials" in grant_types:
            raise InvalidClientMetadata("client_credentials requires a confidential client")

        client, client_secret = self.registry.register_client(
            request.redirect_uris,
            client_name=request.client_name,
            public=public,
            grant_types=grant_types,
            token_endpoint_auth_method=auth_method,
            scope=request.scope,
        )
        response = {
            "client_id": client.client_id,
            "client_id_issued_at": int(client.created_at.timestamp()),
            "redirect_uris": client.redirect_uris,
            "grant_types": client.grant_types,
            "response_types": request.response_types or SUPPORTED_RESPONSE_TYPES,
            "token_endpoint_auth_method": client.token_endpoint_auth_method,
        }
        if client.client_name:
            response["client_name"] = client.client_name
        if client.scope:
            response["scope"] = client.scope
        if client_secret:
            response["client_secret"] = client_secret
            response["client_secret_expires_at"] = 0
        return response


def _first_error(error: ValidationError) -> str:
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail.get("loc", ()))
    return f"{location}: {detail.get('msg')}" if location else detail.get("msg", "Invalid metadata")
