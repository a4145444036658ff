"""
Bearer token authentication gate.

Per request: unauthenticated -> authenticated | rejected.

    1. is_oauth2_request: Authorization header carries a bearer token
    2. applies: the route has not opted out
    3. decode the JWT
    4. the stored token exists, is an access token and is not revoked;
       a blocked owner gets the token revoked
    5. build the Principal and annotate the request
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union

from loguru import logger

from oauth_server.codec import TokenCodec, scopes_from_claims
from oauth_server.errors import AuthChallenge, BlockedAccount, RevokedToken, TokenDecodingError
from oauth_server.models import LOCKED_ROLES, Account, Consumer, Token
from oauth_server.repository import OAuthRepository
from oauth_server.scopes import WILDCARD, ScopeRegistry

BEARER_PATTERN = re.compile(r"^\s*Bearer\s+\S")
BEARER_PREFIX = re.compile(r"^\s*Bearer\s+", re.IGNORECASE)

CONSUMER_ID_HEADER = "X-Consumer-ID"

# Route option name for opting out of bearer authentication.
SKIP_AUTH_OPTION = "_oauth_skip_auth"

RouteResolver = Callable[["AuthRequest"], Optional[str]]
RequestParser = Callable[["AuthRequest"], "AuthRequest"]


@dataclass
class AuthRequest:
    """Framework-neutral view of an inbound request"""

    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, Any] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.headers = {key.lower(): value for key, value in self.headers.items()}

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def set_header(self, name: str, value: str) -> None:
        self.headers[name.lower()] = value

    def duplicate(self) -> "AuthRequest":
        return AuthRequest(
            method=self.method,
            path=self.path,
            headers=dict(self.headers),
            files=copy.copy(self.files),
            attributes=dict(self.attributes),
        )


@dataclass
class Principal:
    """Identity established from a valid bearer token"""

    token: Token
    client: Optional[Consumer]
    account: Optional[Account] = None
    scopes: List[str] = field(default_factory=list)
    permissions: FrozenSet[str] = frozenset()
    roles: List[str] = field(default_factory=list)
    # None for tokens without an owning account.
    account_permissions: Optional[FrozenSet[str]] = None
    blocked: bool = False
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def client_id(self) -> str:
        return self.token.client_id

    @property
    def user_id(self) -> Optional[str]:
        return self.token.user_id

    @property
    def account_name(self) -> Optional[str]:
        return self.account.name if self.account else None

    @property
    def is_authenticated(self) -> bool:
        return self.account is not None

    def has_permission(self, permission: str) -> bool:
        """Scopes must confer the permission; a user-bound token also needs it on the account"""
        if not (WILDCARD in self.permissions or permission in self.permissions):
            return False
        if self.account_permissions is None:
            return True
        return WILDCARD in self.account_permissions or permission in self.account_permissions

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def get_roles(self, exclude_locked_roles: bool = False) -> List[str]:
        """Role ids conferred by the token's scopes"""
        if exclude_locked_roles:
            return [role for role in self.roles if role not in LOCKED_ROLES]
        return list(self.roles)


class AuthenticationGate:
    """Validates bearer tokens and turns them into a Principal"""

    def __init__(self, codec: TokenCodec, repository: OAuthRepository,
                 scope_registry: ScopeRegistry, route_resolver: Optional[RouteResolver] = None,
                 route_options: Optional[Dict[str, Dict[str, Any]]] = None,
                 request_parser: Optional[RequestParser] = None):
        self.codec = codec
        self.repository = repository
        self.scope_registry = scope_registry
        self.route_resolver = route_resolver
        self.route_options = route_options or {}
        # Re-parses the request (e.g. a multipart body) after authentication.
        self.request_parser = request_parser or AuthRequest.duplicate

    # ==================== APPLICABILITY ====================

    @staticmethod
    def is_oauth2_request(request: AuthRequest) -> bool:
        authorization = request.get_header("Authorization")
        return bool(authorization) and bool(BEARER_PATTERN.match(authorization))

    def skip_route(self, route_name: str) -> None:
        self.route_options.setdefault(route_name, {})[SKIP_AUTH_OPTION] = True

    def _route_name(self, request: AuthRequest) -> Optional[str]:
        if self.route_resolver is None:
            return None
        try:
            return self.route_resolver(request)
        except Exception as e:
            logger.debug(f"[GATE] Route lookup failed for {request.path}: {type(e).__name__}: {e}")
            return None

    def applies(self, request: AuthRequest) -> bool:
        # Route lookups only happen for bearer requests.
        if not self.is_oauth2_request(request):
            return False

        route_name = self._route_name(request)
        if route_name is None:
            return True
        options = self.route_options.get(route_name, {})
        return not options.get(SKIP_AUTH_OPTION, False)

    # ==================== VALIDATION ====================

    def validate_token(self, token_string: str) -> Principal:
        """Decode and check a token; raises TokenDecodingError subclasses"""
        claims = self.codec.decode(token_string)

        token = self.repository.find_token_by_id(str(claims["jti"]))
        if token is None or token.is_revoked() or not token.is_access_token:
            raise RevokedToken()

        account = None
        if token.user_id:
            account = self.repository.find_account(token.user_id)
            if account is None:
                self.repository.revoke_token(token.value)
                token.revoke()
                logger.warning(f"[GATE] Revoked token of deleted account {token.user_id}")
                raise RevokedToken("Access token owner no longer exists")
            if account.is_blocked:
                self.repository.revoke_token(token.value)
                token.revoke()
                logger.warning(f"[GATE] Revoked token of blocked account {account.name}")
                raise BlockedAccount(account.name)

        client = self.repository.find_consumer_by_client_id(token.client_id)
        scope_names = scopes_from_claims(claims) or list(token.scopes or [])
        permissions = set()
        roles = set()
        for scope in self.scope_registry.load_multiple(scope_names):
            permissions |= self.scope_registry.permissions_for(scope)
            roles.update(self.scope_registry.roles_for(scope))

        return Principal(
            token=token,
            client=client,
            account=account,
            scopes=scope_names,
            permissions=frozenset(permissions),
            roles=sorted(roles),
            account_permissions=self._account_permissions(account),
            blocked=account.is_blocked if account else False,
            claims=claims,
        )

    def _account_permissions(self, account: Optional[Account]) -> Optional[FrozenSet[str]]:
        if account is None:
            return None
        permissions = set()
        for role_id in account.get_roles():
            role = self.repository.find_role(role_id)
            if role is not None:
                permissions.update(role.permissions or [])
        return frozenset(permissions)

    def authenticate(self, request: AuthRequest) -> Union[Principal, AuthChallenge]:
        authorization = request.get_header("Authorization") or ""
        token_string = BEARER_PREFIX.sub("", authorization, count=1).strip()

        try:
            principal = self.validate_token(token_string)
        except TokenDecodingError as e:
            logger.info(f"[GATE] Rejected {request.method} {request.path}: {e.hint}")
            return AuthChallenge.from_error(authorization, e)

        # Uploads decoded by the parser are only visible on the parsed request.
        parsed = self.request_parser(request)
        if parsed is not request and parsed.files:
            request.files.update(parsed.files)

        request.attributes.update({
            "oauth_access_token_id": principal.token.value,
            "oauth_client_id": principal.client_id,
            "oauth_user_id": principal.user_id,
            "oauth_scopes": list(principal.scopes),
        })
        request.set_header(CONSUMER_ID_HEADER, principal.client_id)

        logger.debug(f"[GATE] Authenticated client {principal.client_id} on {request.path}")
        return principal
