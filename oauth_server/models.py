"""
SQLAlchemy models for the OAuth2 token service.

Consumers, accounts and roles are owned by upstream administrative systems
and are only read here. Tokens are the one entity this package mutates.
"""

import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional

import bcrypt
from loguru import logger
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, create_engine, inspect
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from oauth_server.config import (
    ACCESS_TOKEN,
    DEFAULT_ACCESS_TOKEN_EXPIRATION,
    DEFAULT_REFRESH_TOKEN_EXPIRATION,
    REFRESH_TOKEN,
    get_settings,
)

Base = declarative_base()

GRANULARITY_PERMISSION = "permission"
GRANULARITY_ROLE = "role"

# System roles every account implicitly has.
LOCKED_ROLES = frozenset({"anonymous", "authenticated"})

_engine = None
_SessionLocal = None


# ==================== SECRET HASHING ====================

def hash_secret(secret: str) -> str:
    """Hash a client secret using bcrypt"""
    secret_bytes = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(secret_bytes, bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_secret(secret: str, secret_hash: Optional[str]) -> bool:
    """Verify a client secret against its bcrypt hash"""
    if not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8")[:72], secret_hash.encode("utf-8"))
    except ValueError as e:
        logger.error(f"[VERIFY] Malformed secret hash: {e}")
        return False


# ==================== ENTITIES ====================

class Account(Base):
    """User account tokens may be issued on behalf of"""

    __tablename__ = "accounts"

    user_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(Boolean, default=True)
    roles = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __init__(self, **kwargs):
        kwargs.setdefault("user_id", str(uuid.uuid4()))
        kwargs.setdefault("status", True)
        kwargs.setdefault("roles", [])
        super().__init__(**kwargs)

    @property
    def is_blocked(self) -> bool:
        return not self.status

    def get_roles(self, exclude_locked_roles: bool = False) -> List[str]:
        roles = list(self.roles or [])
        if exclude_locked_roles:
            return [role for role in roles if role not in LOCKED_ROLES]
        return ["authenticated"] + [role for role in roles if role != "authenticated"]


class Role(Base):
    """Role with a JSON list of permissions ("*" grants everything)"""

    __tablename__ = "roles"

    role_id = Column(String(64), primary_key=True)
    label = Column(String(255))
    permissions = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __init__(self, **kwargs):
        kwargs.setdefault("permissions", [])
        super().__init__(**kwargs)

    @property
    def is_locked(self) -> bool:
        return self.role_id in LOCKED_ROLES


class Consumer(Base):
    """Registered client application"""

    __tablename__ = "consumers"

    consumer_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String(128), unique=True, nullable=False, index=True)
    label = Column(String(255))
    secret = Column(String(255), nullable=True)  # bcrypt hash
    confidential = Column(Boolean, default=True)
    pkce = Column(Boolean, default=False)
    grant_types = Column(JSON, default=list)
    scopes = Column(JSON, default=list)
    grant_type_scopes = Column(JSON, default=dict)  # grant type -> scope names
    redirect = Column(JSON, default=list)
    access_token_expiration = Column(Integer, default=DEFAULT_ACCESS_TOKEN_EXPIRATION)
    refresh_token_expiration = Column(Integer, default=DEFAULT_REFRESH_TOKEN_EXPIRATION)
    automatic_authorization = Column(Boolean, default=False)
    remember_approval = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __init__(self, **kwargs):
        kwargs.setdefault("consumer_id", str(uuid.uuid4()))
        kwargs.setdefault("confidential", True)
        kwargs.setdefault("pkce", False)
        kwargs.setdefault("grant_types", [])
        kwargs.setdefault("scopes", [])
        kwargs.setdefault("grant_type_scopes", {})
        kwargs.setdefault("redirect", [])
        kwargs.setdefault("access_token_expiration", DEFAULT_ACCESS_TOKEN_EXPIRATION)
        kwargs.setdefault("refresh_token_expiration", DEFAULT_REFRESH_TOKEN_EXPIRATION)
        kwargs.setdefault("automatic_authorization", False)
        kwargs.setdefault("remember_approval", True)
        super().__init__(**kwargs)

    def has_grant_type(self, grant_type: str) -> bool:
        return grant_type in (self.grant_types or [])

    def default_scopes_for(self, grant_type: str) -> List[str]:
        """Scopes granted when a request names none: grant override, else defaults"""
        overrides = self.grant_type_scopes or {}
        if overrides.get(grant_type):
            return list(overrides[grant_type])
        return list(self.scopes or [])

    def token_expiration(self, bundle: str) -> int:
        if bundle == REFRESH_TOKEN:
            return int(self.refresh_token_expiration or DEFAULT_REFRESH_TOKEN_EXPIRATION)
        return int(self.access_token_expiration or DEFAULT_ACCESS_TOKEN_EXPIRATION)

    def set_secret(self, secret: str) -> None:
        self.secret = hash_secret(secret)

    def check_secret(self, secret: Optional[str]) -> bool:
        if not self.confidential and not self.secret:
            return not secret
        return verify_secret(secret or "", self.secret)


class Scope(Base):
    """
    OAuth2 scope.

    ``grant_types`` maps a grant type to ``{"status": bool}`` and decides on
    its own whether the scope is offered under that grant type.
    """

    __tablename__ = "oauth2_scopes"

    scope_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(Text)
    umbrella = Column(Boolean, default=False)
    parent = Column(String(255), nullable=True)
    granularity_id = Column(String(32), nullable=True)
    granularity_configuration = Column(JSON, default=dict)
    grant_types = Column(JSON, default=dict)

    def __init__(self, **kwargs):
        kwargs.setdefault("scope_id", str(uuid.uuid4()))
        kwargs.setdefault("description", "")
        kwargs.setdefault("umbrella", False)
        kwargs.setdefault("granularity_configuration", {})
        kwargs.setdefault("grant_types", {})
        super().__init__(**kwargs)

    def is_enabled_for(self, grant_type: str) -> bool:
        setting = (self.grant_types or {}).get(grant_type)
        if isinstance(setting, dict):
            return bool(setting.get("status", False))
        return bool(setting)

    def enabled_grant_types(self) -> List[str]:
        return sorted(name for name in (self.grant_types or {}) if self.is_enabled_for(name))

    def __repr__(self) -> str:
        return f"<Scope {self.name}>"


class Token(Base):
    """Access or refresh token; ``value`` is also the JWT jti"""

    __tablename__ = "oauth2_tokens"

    value = Column(String(128), primary_key=True)
    bundle = Column(String(32), nullable=False, default=ACCESS_TOKEN, index=True)
    client_id = Column(String(128), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    grant_type = Column(String(64), nullable=True)
    scopes = Column(JSON, default=list)
    issued_at = Column(Integer, nullable=False)
    expires_at = Column(Integer, nullable=False, index=True)
    revoked = Column(Boolean, default=False, index=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("bundle", ACCESS_TOKEN)
        kwargs.setdefault("scopes", [])
        kwargs.setdefault("revoked", False)
        kwargs.setdefault("issued_at", int(time.time()))
        super().__init__(**kwargs)

    @property
    def is_access_token(self) -> bool:
        return self.bundle == ACCESS_TOKEN

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at < now

    def revoke(self) -> None:
        self.revoked = True

    def is_revoked(self) -> bool:
        return bool(self.revoked)

    def to_dict(self) -> Dict:
        return {
            "value": self.value,
            "bundle": self.bundle,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "grant_type": self.grant_type,
            "scopes": list(self.scopes or []),
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "revoked": bool(self.revoked),
        }

    def __repr__(self) -> str:
        return f"<Token {self.bundle} {self.value[:8]}... client={self.client_id}>"


# ==================== ENGINE / SESSIONS ====================

def create_db_engine(database_url: str, echo: bool = False):
    """Create an engine; SQLite URLs share one connection across threads"""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_size=10, max_overflow=20, pool_recycle=1500)


def get_engine():
    """Get the process-wide engine built from settings"""
    global _engine

    if _engine is not None:
        return _engine

    settings = get_settings()
    _engine = create_db_engine(settings.database_url, echo=settings.db_echo)
    logger.info(f"[DB] Engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_session_factory(engine=None):
    """Session factory; objects stay usable after commit"""
    global _SessionLocal

    if engine is not None:
        return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _SessionLocal


def init_database(engine=None) -> None:
    """
    Create missing tables and default roles (idempotent).
    """
    engine = engine or get_engine()
    existing_tables = set(inspect(engine).get_table_names())
    Base.metadata.create_all(engine, checkfirst=True)

    created = sorted(set(Base.metadata.tables) - existing_tables)
    if created:
        logger.info(f"[DB] Created tables: {created}")

    _create_default_roles(get_session_factory(engine))


def _create_default_roles(session_factory) -> None:
    """Create locked roles if they don't exist"""
    session = session_factory()
    try:
        existing_roles = {role.role_id for role in session.query(Role).all()}
        created = []
        for role_id in sorted(LOCKED_ROLES - existing_roles):
            session.add(Role(role_id=role_id, label=role_id.capitalize(), permissions=[]))
            created.append(role_id)
        if created:
            session.commit()
            logger.info(f"[DB] Created default roles: {created}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
