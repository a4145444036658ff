"""
Shared fixtures for the token service tests.
"""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from oauth_server.authority import TokenAuthority
from oauth_server.codec import TokenCodec
from oauth_server.gate import AuthenticationGate
from oauth_server.keys import KeyProvider
from oauth_server.locks import InMemoryLockBackend
from oauth_server.models import Account, Consumer, Role, Scope, hash_secret
from oauth_server.repository import InMemoryRepository
from oauth_server.scopes import ScopeRegistry

HS_SECRET = "test-secret-that-is-at-least-32-bytes-long"
CLIENT_SECRET = "s3cret"

SCOPE_DEFINITIONS = [
    {
        "name": "auth_code_only",
        "description": "Authorization code only",
        "grant_types": {"authorization_code": {"status": True}, "client_credentials": {"status": False}},
        "granularity_id": "permission",
        "granularity_configuration": {"permission": "access content"},
    },
    {
        "name": "client_creds_only",
        "description": "Client credentials only",
        "grant_types": {"client_credentials": {"status": True}},
        "granularity_id": "role",
        "granularity_configuration": {"role": "editor"},
    },
    {
        "name": "both_grants",
        "description": "Both grants",
        "grant_types": {"authorization_code": {"status": True}, "client_credentials": {"status": True}},
        "granularity_id": "permission",
        "granularity_configuration": {"permission": "view stats"},
    },
]


@pytest.fixture(scope="session")
def client_secret_hash():
    # bcrypt is slow, hash once per session.
    return hash_secret(CLIENT_SECRET)


@pytest.fixture(scope="session")
def rsa_pem_pair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


def seed_repository(repository, client_secret_hash):
    for definition in SCOPE_DEFINITIONS:
        repository.save(Scope(**definition))
    repository.save(Role(role_id="editor", label="Editor", permissions=["edit content", "view content"]))
    repository.save(Role(role_id="authenticated", label="Authenticated", permissions=["access content"]))
    repository.save(Consumer(
        client_id="cc-client",
        label="Client credentials consumer",
        secret=client_secret_hash,
        grant_types=["client_credentials"],
        scopes=["client_creds_only"],
    ))
    repository.save(Consumer(
        client_id="ac-client",
        label="Authorization code consumer",
        grant_types=["authorization_code", "refresh_token"],
        scopes=["auth_code_only"],
        access_token_expiration=600,
    ))
    repository.save(Account(user_id="user-1", name="alice"))
    repository.save(Account(user_id="user-2", name="bob", status=False))


@pytest.fixture
def repository(client_secret_hash):
    repository = InMemoryRepository()
    seed_repository(repository, client_secret_hash)
    return repository


@pytest.fixture
def registry(repository):
    return ScopeRegistry(repository)


@pytest.fixture
def hs_keys():
    return KeyProvider(algorithm="HS256", secret=HS_SECRET, issuer="https://auth.example.com/")


@pytest.fixture
def rs_keys(rsa_pem_pair):
    private_pem, public_pem = rsa_pem_pair
    return KeyProvider(
        algorithm="RS256",
        private_key_pem=private_pem,
        public_key_pem=public_pem,
        issuer="https://auth.example.com/",
    )


@pytest.fixture
def codec(hs_keys):
    return TokenCodec(hs_keys)


@pytest.fixture
def gate(codec, repository, registry):
    return AuthenticationGate(codec, repository, registry)


@pytest.fixture
def lock_backend():
    return InMemoryLockBackend()


@pytest.fixture
def authority(repository, registry, codec, gate, lock_backend):
    return TokenAuthority(repository, registry, codec, gate=gate, lock_backend=lock_backend)
