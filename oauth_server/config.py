"""
Grant type table and runtime settings for the OAuth2 token service.
Settings are read from the environment (and a .env file when present).
"""

import os
from typing import Any, Dict, Optional

import dotenv
from loguru import logger

dotenv.load_dotenv()

GRANT_TYPES = {
    "authorization_code": {
        "name": "Authorization Code",
        "description": "Exchange of an authorization code issued to a user",
        "user_bound": True,
        "issues_refresh_token": True,
    },
    "client_credentials": {
        "name": "Client Credentials",
        "description": "Server-to-server access on behalf of the client itself",
        "user_bound": False,
        "issues_refresh_token": False,
    },
    "refresh_token": {
        "name": "Refresh Token",
        "description": "Rotation of a previously issued refresh token",
        "user_bound": True,
        "issues_refresh_token": True,
    },
}

ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
TOKEN_BUNDLES = (ACCESS_TOKEN, REFRESH_TOKEN)

DEFAULT_ACCESS_TOKEN_EXPIRATION = 300
DEFAULT_REFRESH_TOKEN_EXPIRATION = 1209600


def get_grant_type_config(grant_type: str) -> Optional[Dict[str, Any]]:
    """Get grant type configuration by name"""
    return GRANT_TYPES.get(grant_type)


def validate_grant_type(grant_type: str) -> bool:
    """Validate if grant type is known"""
    return grant_type in GRANT_TYPES


def grant_type_options() -> Dict[str, str]:
    """Grant types as {machine name: label}, for scope field settings"""
    return {key: value["name"] for key, value in GRANT_TYPES.items()}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[CONFIG] {name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[CONFIG] {name}={raw!r} is not a number, using {default}")
        return default


class OAuthSettings:
    """
    Settings for the token service.

    Every attribute can be overridden with a keyword argument, which is how
    tests and embedding applications configure the service without touching
    the environment.
    """

    def __init__(self, **overrides):
        self.issuer = os.getenv("OAUTH_ISSUER", "https://localhost/")
        self.jwt_algorithm = os.getenv("OAUTH_JWT_ALGORITHM", "RS256")
        self.jwt_secret = os.getenv("OAUTH_JWT_SECRET")
        self.private_key_path = os.getenv("OAUTH_PRIVATE_KEY_PATH")
        self.public_key_path = os.getenv("OAUTH_PUBLIC_KEY_PATH")
        self.jwt_leeway = _env_int("OAUTH_JWT_LEEWAY", 0)

        # 0 disables expired token deletion in cron.
        self.token_cron_batch_size = _env_int("OAUTH_TOKEN_CRON_BATCH_SIZE", 0)

        self.database_url = os.getenv("OAUTH_DATABASE_URL", "sqlite:///oauth.db")
        self.db_echo = os.getenv("OAUTH_DB_ECHO", "False").lower() == "true"
        self.redis_url = os.getenv("OAUTH_REDIS_URL")
        self.lock_timeout = _env_float("OAUTH_LOCK_TIMEOUT", 30.0)
        self.lock_wait = _env_float("OAUTH_LOCK_WAIT", 0.0)
        self.scopes_file = os.getenv("OAUTH_SCOPES_FILE")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown OAuth setting: {key}")
            setattr(self, key, value)

        if self.token_cron_batch_size < 0:
            logger.warning("[CONFIG] Negative token_cron_batch_size treated as 0")
            self.token_cron_batch_size = 0

    def __repr__(self) -> str:
        return (
            f"OAuthSettings(issuer={self.issuer!r}, jwt_algorithm={self.jwt_algorithm!r}, "
            f"token_cron_batch_size={self.token_cron_batch_size})"
        )


_settings: Optional[OAuthSettings] = None


def get_settings() -> OAuthSettings:
    global _settings
    if _settings is None:
        _settings = OAuthSettings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
