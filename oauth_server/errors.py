"""
Error taxonomy for the OAuth2 token service.

Every failure carries an OAuth2 ``error_type`` (the RFC 6749 / RFC 6750 error
code) and a human ``hint`` so that callers receive a structured challenge
instead of a bare boolean.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote


class OAuthServerError(Exception):
    """Base exception for the token service."""

    error_type = "server_error"
    http_status = 500
    retryable = False
    default_message = "The authorization server encountered an unexpected condition."

    def __init__(self, hint: Optional[str] = None, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.hint = hint or ""
        self.details = details or {}
        super().__init__(self.message if not self.hint else f"{self.message} ({self.hint})")

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error_type, "error_description": self.message}
        if self.hint:
            body["hint"] = self.hint
        return body


# ==================== TOKEN VALIDATION ====================

class TokenDecodingError(OAuthServerError):
    """Inbound token could not be accepted."""

    error_type = "access_denied"
    http_status = 401
    default_message = "The resource owner or authorization server denied the request."


class MalformedToken(TokenDecodingError):
    """Bad signature, bad structure or unsigned token."""


class ExpiredToken(TokenDecodingError):
    """Token is past its exp claim."""

    def __init__(self, hint: str = "Access token is invalid: the token has expired", **kwargs):
        super().__init__(hint, **kwargs)


class NotYetValid(TokenDecodingError):
    """Token is used before its nbf claim."""

    def __init__(self, hint: str = "Access token is invalid: the token is not yet valid", **kwargs):
        super().__init__(hint, **kwargs)


class RevokedToken(TokenDecodingError):
    def __init__(self, hint: str = "Access token has been revoked", **kwargs):
        super().__init__(hint, **kwargs)


class BlockedAccount(TokenDecodingError):
    """The account owning the token is blocked."""

    def __init__(self, account_name: str, **kwargs):
        self.account_name = account_name
        super().__init__(f"{account_name} is blocked or has not been activated yet.", **kwargs)


# ==================== ISSUANCE ====================

class InvalidScope(OAuthServerError):
    error_type = "invalid_scope"
    http_status = 400
    default_message = "The requested scope is invalid, unknown, or malformed"

    def __init__(self, scopes, grant_type: str, **kwargs):
        self.scopes = sorted(scopes)
        self.grant_type = grant_type
        hint = f"Scopes not available for {grant_type}: {', '.join(self.scopes)}"
        super().__init__(hint, **kwargs)


class InvalidClient(OAuthServerError):
    error_type = "invalid_client"
    http_status = 401
    default_message = "Client authentication failed"


class UnauthorizedClient(OAuthServerError):
    error_type = "unauthorized_client"
    http_status = 400
    default_message = "The client is not authorized to use this grant type"


# ==================== INFRASTRUCTURE ====================

class RepositoryUnavailable(OAuthServerError):
    """Storage failure. Never treated as "no token"."""

    error_type = "server_error"
    http_status = 503
    default_message = "The token storage is unavailable"


class LockContention(OAuthServerError):
    """Another request with the same signature is being processed."""

    error_type = "temporarily_unavailable"
    http_status = 503
    retryable = True
    default_message = "The request is already being processed, try again"


class PrivateClaimSerializationError(OAuthServerError):
    def __init__(self, claim_name: str, reason: str):
        self.claim_name = claim_name
        super().__init__(f"Could not add private claim {claim_name} to token: {reason}")


# ==================== CHALLENGES ====================

def quote_header_text(text: str) -> str:
    """
    Make text safe inside a quoted-string header parameter.

    Backslash and double quote are escaped. Characters outside printable
    Latin-1 are percent-encoded as UTF-8, since header values are sent as
    Latin-1.
    """
    quoted = []
    for char in text:
        if char in ('"', "\\"):
            quoted.append("\\" + char)
        elif 0x20 <= ord(char) <= 0x7E or 0xA0 <= ord(char) <= 0xFF:
            quoted.append(char)
        else:
            quoted.append(quote(char, safe=""))
    return "".join(quoted)


@dataclass(frozen=True)
class AuthChallenge:
    """WWW-Authenticate challenge accompanying a 401 response."""

    scheme: str
    error: str
    hint: str
    realm: str = "OAuth"

    @classmethod
    def from_error(cls, authorization_header: Optional[str], error: OAuthServerError) -> "AuthChallenge":
        # Raw header, so a header with leading whitespace gets a Basic challenge.
        scheme = "Bearer" if (authorization_header or "").startswith("Bearer") else "Basic"
        return cls(scheme=scheme, error=error.error_type, hint=error.hint)

    def header_value(self) -> str:
        """Header-safe rendering; the unescaped hint belongs in the response body"""
        return (
            f'{self.scheme} realm="{self.realm}", error="{self.error}", '
            f'error_description="{quote_header_text(self.hint)}"'
        )

    def __str__(self) -> str:
        return self.header_value()
