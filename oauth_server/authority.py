"""
Token authority: issuance, revocation and validation of OAuth2 tokens.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from loguru import logger

from oauth_server.codec import TokenCodec
from oauth_server.config import ACCESS_TOKEN, REFRESH_TOKEN, OAuthSettings, get_settings
from oauth_server.errors import InvalidClient, InvalidScope, RevokedToken, UnauthorizedClient
from oauth_server.gate import AuthenticationGate, Principal
from oauth_server.locks import InMemoryLockBackend, LockBackend, lock_name, named_lock, request_signature
from oauth_server.models import Account, Consumer, Token
from oauth_server.repository import OAuthRepository
from oauth_server.scopes import ScopeRegistry


def generate_token_id() -> str:
    return secrets.token_hex(40)


@dataclass
class IssuedToken:
    token: Token
    jwt: str
    expires_in: int

    def as_response(self, refresh_token: Optional["IssuedToken"] = None) -> Dict:
        """RFC 6749 section 5.1 token response body"""
        body = {
            "token_type": "Bearer",
            "access_token": self.jwt,
            "expires_in": self.expires_in,
            "scope": " ".join(self.token.scopes or []),
        }
        if refresh_token is not None:
            body["refresh_token"] = refresh_token.jwt
        return body


class TokenAuthority:
    """Issues, revokes and validates tokens for registered consumers"""

    def __init__(self, repository: OAuthRepository, scope_registry: ScopeRegistry,
                 codec: TokenCodec, gate: Optional[AuthenticationGate] = None,
                 lock_backend: Optional[LockBackend] = None,
                 clock: Callable[[], float] = time.time,
                 lock_timeout: float = 30.0, lock_wait: float = 0.0):
        self.repository = repository
        self.scope_registry = scope_registry
        self.codec = codec
        self.gate = gate or AuthenticationGate(codec, repository, scope_registry)
        self.lock_backend = lock_backend or InMemoryLockBackend()
        self._clock = clock
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    @classmethod
    def from_settings(cls, repository: OAuthRepository, codec: TokenCodec,
                      settings: Optional[OAuthSettings] = None, **kwargs) -> "TokenAuthority":
        settings = settings or get_settings()
        if settings.redis_url and "lock_backend" not in kwargs:
            from oauth_server.locks import RedisLockBackend

            kwargs["lock_backend"] = RedisLockBackend.from_url(settings.redis_url)
        return cls(
            repository,
            ScopeRegistry(repository),
            codec,
            lock_timeout=settings.lock_timeout,
            lock_wait=settings.lock_wait,
            **kwargs,
        )

    # ==================== ISSUANCE ====================

    def _resolve_scopes(self, client: Consumer, grant_type: str,
                        requested_scopes: Optional[Iterable[str]]) -> list:
        requested = list(dict.fromkeys(requested_scopes or []))
        if not requested:
            requested = client.default_scopes_for(grant_type)

        allowed = {scope.name for scope in self.scope_registry.list_by_grant_type(grant_type)}
        invalid = set(requested) - allowed
        if invalid:
            logger.warning(
                f"[ISSUE] Client {client.client_id} requested scopes not enabled "
                f"for {grant_type}: {sorted(invalid)}"
            )
            raise InvalidScope(invalid, grant_type)
        return requested

    def _create_token(self, client: Consumer, user: Optional[Account], grant_type: str,
                      scopes: list, bundle: str) -> IssuedToken:
        now = int(self._clock())
        expires_in = client.token_expiration(bundle)
        token = Token(
            value=generate_token_id(),
            bundle=bundle,
            client_id=client.client_id,
            user_id=user.user_id if user else None,
            grant_type=grant_type,
            scopes=scopes,
            issued_at=now,
            expires_at=now + expires_in,
        )
        self.repository.save(token)
        encoded = self.codec.encode(token)
        logger.info(f"[ISSUE] Issued {bundle} for client {client.client_id} with scopes {scopes}")
        return IssuedToken(token=token, jwt=encoded, expires_in=expires_in)

    def _check_grant(self, client: Consumer, grant_type: str) -> None:
        if not client.has_grant_type(grant_type):
            logger.warning(f"[ISSUE] Client {client.client_id} not allowed to use {grant_type}")
            raise UnauthorizedClient(f"Grant type {grant_type} is not enabled for this client")

    def issue(self, client: Consumer, user: Optional[Account] = None,
              grant_type: str = "client_credentials", requested_scopes: Optional[Iterable[str]] = None,
              bundle: str = ACCESS_TOKEN, lock_key: Optional[str] = None) -> IssuedToken:
        """
        Issue one token. Scopes outside the grant type's offered scopes raise
        InvalidScope and nothing is persisted.
        """
        self._check_grant(client, grant_type)
        scopes = self._resolve_scopes(client, grant_type, requested_scopes)

        name = lock_key or request_signature(
            client.client_id, grant_type, scopes, user.user_id if user else None
        )
        with named_lock(self.lock_backend, name, self.lock_timeout, self.lock_wait):
            return self._create_token(client, user, grant_type, scopes, bundle)

    def issue_token_pair(self, client: Consumer, user: Optional[Account], grant_type: str,
                         requested_scopes: Optional[Iterable[str]] = None,
                         code: Optional[str] = None):
        """Access and refresh token under a single lock (keyed by client and code)"""
        self._check_grant(client, grant_type)
        scopes = self._resolve_scopes(client, grant_type, requested_scopes)

        name = lock_name(client.client_id, grant_type, code) if code else request_signature(
            client.client_id, grant_type, scopes, user.user_id if user else None
        )
        with named_lock(self.lock_backend, name, self.lock_timeout, self.lock_wait):
            access = self._create_token(client, user, grant_type, scopes, ACCESS_TOKEN)
            refresh = self._create_token(client, user, grant_type, scopes, REFRESH_TOKEN)
        return access, refresh

    def issue_client_credentials(self, client_id: str, client_secret: Optional[str],
                                 requested_scopes: Optional[Iterable[str]] = None) -> IssuedToken:
        client = self.repository.find_consumer_by_client_id(client_id)
        if client is None:
            logger.warning(f"[ISSUE] Unknown client: {client_id}")
            raise InvalidClient("Unknown client")
        if not client.confidential:
            logger.warning(f"[ISSUE] Public client {client_id} used client_credentials")
            raise InvalidClient("Client credentials require a confidential client")
        if not client.check_secret(client_secret):
            logger.warning(f"[ISSUE] Bad secret for client {client_id}")
            raise InvalidClient("Client authentication failed")

        return self.issue(client, None, "client_credentials", requested_scopes)

    # ==================== REVOCATION ====================

    def revoke(self, token: Token) -> Token:
        """Revoke ``token``; revoking twice is a no-op"""
        if self.repository.revoke_token(token.value):
            logger.info(f"[REVOKE] Revoked {token.bundle} {token.value[:8]}... of {token.client_id}")
        token.revoke()
        return token

    def revoke_by_id(self, token_id: str) -> Token:
        token = self.repository.find_token_by_id(token_id)
        if token is None:
            raise RevokedToken("Token does not exist")
        return self.revoke(token)

    # ==================== VALIDATION ====================

    def validate(self, token_string: str) -> Principal:
        return self.gate.validate_token(token_string)
