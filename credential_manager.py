# credential_manager.py
import os
from typing import List, Optional


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


class CredentialManager:
    @staticmethod
    def get_base_url():
        return os.getenv('BASE_URL', 'http://localhost:3000').rstrip('/')

    @staticmethod
    def get_resource_url():
        return f"{CredentialManager.get_base_url()}/mcp"

    @staticmethod
    def get_secret_key():
        secret_key = os.getenv('SECRET_KEY', 'change-me-in-production')
        if not secret_key:
            raise EnvironmentError("Missing required environment variable: SECRET_KEY")
        return secret_key

    @staticmethod
    def get_missing_google_vars():
        required_vars = ['GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET']
        return [var for var in required_vars if not os.getenv(var)]

    @staticmethod
    def get_google_credentials():
        return {
            'client_id': os.environ.get('GOOGLE_CLIENT_ID'),
            'client_secret': os.environ.get('GOOGLE_CLIENT_SECRET'),
            'redirect_uri': os.getenv('GOOGLE_REDIRECT_URI',
                                      f"{CredentialManager.get_base_url()}/oauth/callback"),
        }

    @staticmethod
    def get_preconfigured_client():
        """
        Client seeded into the registry at startup, or None when MCP_CLIENT_ID is unset.
        """
        client_id = os.getenv('MCP_CLIENT_ID')
        if not client_id:
            return None
        return {
            'client_id': client_id,
            'client_secret': os.getenv('MCP_CLIENT_SECRET') or None,
            'redirect_uris': _split(os.getenv('MCP_REDIRECT_URIS')),
        }

    @staticmethod
    def get_token_ttls():
        return {
            'access_token': int(os.getenv('ACCESS_TOKEN_TTL_SECONDS', 3600)),
            'authorization_code': int(os.getenv('AUTHORIZATION_CODE_TTL_SECONDS', 600)),
        }

    @staticmethod
    def get_cors_origins():
        origins = _split(os.getenv('CORS_ORIGINS'))
        return origins or [
            "http://localhost:5173",
            "http://localhost:3000",
        ]

    @staticmethod
    def get_widget_base_url():
        return os.getenv('WIDGET_BASE_URL', CredentialManager.get_base_url()).rstrip('/')

    @staticmethod
    def get_token_store_path():
        return os.getenv('CALENDAR_TOKEN_STORE_PATH') or None

    @staticmethod
    def get_calendar_timeout():
        return float(os.getenv('CALENDAR_TIMEOUT_SECONDS', 30))

    @staticmethod
    def allow_default_subject():
        return os.getenv('ALLOW_DEFAULT_SUBJECT', 'true').strip().lower() not in ('0', 'false', 'no')
