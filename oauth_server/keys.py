"""
Signing key provider.

HS* algorithms sign with a shared secret; RS*/ES* algorithms sign with a
PEM private key and verify with the matching public key.
"""

import json
from pathlib import Path
from typing import Dict, Optional

import jwt
from loguru import logger

from oauth_server.config import OAuthSettings, get_settings

SYMMETRIC_ALGORITHMS = ("HS256", "HS384", "HS512")
ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "ES512")


def _read_pem(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    return Path(path).read_text()


class KeyProvider:
    """Active signing and verification key for the token service"""

    def __init__(self, algorithm: str = "RS256", secret: Optional[str] = None,
                 private_key_path: Optional[str] = None, public_key_path: Optional[str] = None,
                 private_key_pem: Optional[str] = None, public_key_pem: Optional[str] = None,
                 issuer: str = "https://localhost/"):
        if algorithm not in SYMMETRIC_ALGORITHMS + ASYMMETRIC_ALGORITHMS:
            raise ValueError(f"Unsupported JWT algorithm: {algorithm}")

        self.algorithm = algorithm
        self.issuer = issuer
        self._secret = secret
        self._private_key_path = private_key_path
        self._public_key_path = public_key_path
        self._private_key_pem = private_key_pem
        self._public_key_pem = public_key_pem
        self._signing_key = None
        self._verification_key = None
        self.reload()

    @classmethod
    def from_settings(cls, settings: Optional[OAuthSettings] = None) -> "KeyProvider":
        settings = settings or get_settings()
        return cls(
            algorithm=settings.jwt_algorithm,
            secret=settings.jwt_secret,
            private_key_path=settings.private_key_path,
            public_key_path=settings.public_key_path,
            issuer=settings.issuer,
        )

    @property
    def is_symmetric(self) -> bool:
        return self.algorithm in SYMMETRIC_ALGORITHMS

    def reload(self) -> None:
        """(Re)read key material, e.g. after a key rotation on disk"""
        if self.is_symmetric:
            if not self._secret:
                raise ValueError(f"A JWT secret is required for {self.algorithm}")
            if len(self._secret) < 32:
                logger.warning("[KEYS] JWT secret is less than 32 bytes - use a stronger secret!")
            self._signing_key = self._secret
            self._verification_key = self._secret
        else:
            private_pem = self._private_key_pem or _read_pem(self._private_key_path)
            public_pem = self._public_key_pem or _read_pem(self._public_key_path)
            if not private_pem or not public_pem:
                raise ValueError(f"A private and a public key are required for {self.algorithm}")
            self._signing_key = private_pem
            self._verification_key = public_pem

        logger.info(f"[KEYS] Loaded {self.algorithm} key material")

    @property
    def signing_key(self):
        return self._signing_key

    @property
    def verification_key(self):
        return self._verification_key

    def public_jwk(self) -> Optional[Dict]:
        """Public key as a JWK, for asymmetric algorithms only"""
        if self.is_symmetric:
            return None
        if self.algorithm.startswith("RS"):
            algorithm = jwt.algorithms.RSAAlgorithm
        else:
            algorithm = jwt.algorithms.ECAlgorithm
        public_key = algorithm(algorithm.SHA256).prepare_key(self._verification_key)
        jwk = json.loads(algorithm.to_jwk(public_key))
        jwk.update({"alg": self.algorithm, "use": "sig"})
        return jwk
