"""
JWT codec for access tokens.

Claims layout:

    iss    issuer (key provider's, or a private ``iss`` claim)
    aud    client id
    sub    user id when the token is user bound (or a private ``sub`` claim)
    jti    token value, also carried in the JOSE header
    iat    issue time
    nbf    same as iat
    exp    token expiry
    scope  list of granted scope names
"""

import json
import time
from typing import Callable, Dict, List, Optional, Tuple

import jwt
from loguru import logger

from oauth_server.errors import (
    ExpiredToken,
    MalformedToken,
    NotYetValid,
    PrivateClaimSerializationError,
)
from oauth_server.keys import KeyProvider
from oauth_server.models import Token

REGISTERED_CLAIMS = ("iss", "sub", "aud", "exp", "nbf", "iat", "jti")

# Private claims allowed to replace the default value.
OVERRIDABLE_CLAIMS = ("iss", "sub")

PrivateClaimsCallback = Callable[[Dict, Token], None]


class TokenCodec:
    """Encodes Token entities as signed JWTs and decodes them back"""

    def __init__(self, key_provider: KeyProvider,
                 private_claims_callbacks: Optional[List[PrivateClaimsCallback]] = None,
                 clock: Callable[[], float] = time.time, leeway: int = 0):
        self.key_provider = key_provider
        self._callbacks = list(private_claims_callbacks or [])
        self._clock = clock
        self.leeway = leeway

    def add_private_claims_callback(self, callback: PrivateClaimsCallback) -> None:
        self._callbacks.append(callback)

    # ==================== ENCODING ====================

    def _private_claims(self, token: Token) -> Dict:
        private_claims: Dict = {}
        for callback in self._callbacks:
            callback(private_claims, token)

        accepted = {}
        for name, value in private_claims.items():
            try:
                json.dumps(value)
            except (TypeError, ValueError) as e:
                error = PrivateClaimSerializationError(name, str(e))
                logger.error(f"[CODEC] {error.hint}")
                continue
            accepted[name] = value
        return accepted

    def build_claims(self, token: Token) -> Tuple[Dict, Dict]:
        """Claims and JOSE headers for ``token``"""
        now = int(self._clock())
        private_claims = self._private_claims(token)

        claims = {
            "iss": self.key_provider.issuer,
            "aud": token.client_id,
            "jti": token.value,
            "iat": now,
            "nbf": now,
            "exp": int(token.expires_at),
            "scope": list(token.scopes or []),
        }
        if token.user_id:
            claims["sub"] = str(token.user_id)

        for name in OVERRIDABLE_CLAIMS:
            if name in private_claims:
                claims[name] = private_claims[name]

        for name, value in private_claims.items():
            if name in REGISTERED_CLAIMS:
                if name not in OVERRIDABLE_CLAIMS:
                    logger.warning(f"[CODEC] Private claim '{name}' collides with a registered claim, dropped")
                continue
            if name == "scope":
                logger.warning("[CODEC] Private claim 'scope' dropped, scopes come from the token")
                continue
            claims[name] = value

        headers = {"jti": token.value}
        return claims, headers

    def encode(self, token: Token) -> str:
        claims, headers = self.build_claims(token)
        encoded = jwt.encode(
            claims,
            self.key_provider.signing_key,
            algorithm=self.key_provider.algorithm,
            headers=headers,
        )
        logger.debug(f"[CODEC] Encoded {token.bundle} for client {token.client_id}")
        return encoded

    # ==================== DECODING ====================

    def decode(self, token_string: str) -> Dict:
        """
        Verify and decode a JWT.

        The algorithm is pinned to the key provider's; unsigned tokens are
        never accepted. The audience is not verified here since any client's
        token may reach a resource.
        """
        if not token_string:
            raise MalformedToken("The JWT string must have two dots")

        try:
            header = jwt.get_unverified_header(token_string)
            claims = jwt.decode(
                token_string,
                self.key_provider.verification_key,
                algorithms=[self.key_provider.algorithm],
                options={"verify_aud": False, "require": ["exp", "jti"]},
                leeway=self.leeway,
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredToken()
        except jwt.ImmatureSignatureError:
            raise NotYetValid()
        except jwt.InvalidTokenError as e:
            logger.debug(f"[CODEC] Rejected token: {type(e).__name__}: {e}")
            raise MalformedToken(f"Access token could not be verified: {e}")

        if "jti" in header and header["jti"] != claims["jti"]:
            raise MalformedToken("Access token could not be verified: jti mismatch")
        return claims


def scopes_from_claims(claims: Dict) -> List[str]:
    """``scope`` claim as a list; accepts a list or a space separated string"""
    scope = claims.get("scope") or []
    if isinstance(scope, str):
        return scope.split()
    return [str(name) for name in scope]
