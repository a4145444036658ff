"""
Data access layer for the token service.

The repository pattern isolates storage from the token logic. Two backends:

- SQLAlchemyRepository: any database SQLAlchemy supports
- InMemoryRepository: dict-backed, single process (development and tests)

Storage failures surface as RepositoryUnavailable; they are never reported
as "no such token".
"""

import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from loguru import logger
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from oauth_server.errors import RepositoryUnavailable
from oauth_server.models import Account, Consumer, Role, Scope, Token


class OAuthRepository(ABC):
    """Storage contract consumed by the token service."""

    # ==================== TOKENS ====================

    @abstractmethod
    def find_token_by_id(self, token_id: str) -> Optional[Token]:
        pass

    @abstractmethod
    def find_tokens_by_account(self, user_id: str) -> List[Token]:
        pass

    @abstractmethod
    def find_tokens_by_client(self, client_id: str) -> List[Token]:
        pass

    @abstractmethod
    def find_expired_tokens(self, now: int, limit: int = 0) -> List[Token]:
        """Tokens expired before ``now`` or revoked, oldest expiry first. 0 = no limit."""
        pass

    @abstractmethod
    def revoke_token(self, token_id: str) -> bool:
        """Set revoked=True. Returns False when already revoked or gone."""
        pass

    @abstractmethod
    def delete(self, tokens: Iterable[Token]) -> int:
        """Delete tokens; unknown tokens are ignored. Returns rows removed."""
        pass

    # ==================== GENERIC ====================

    @abstractmethod
    def save(self, entity) -> None:
        pass

    # ==================== CONSUMERS / ACCOUNTS ====================

    @abstractmethod
    def find_consumer_by_client_id(self, client_id: str) -> Optional[Consumer]:
        pass

    @abstractmethod
    def find_account(self, user_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    def find_role(self, role_id: str) -> Optional[Role]:
        pass

    # ==================== SCOPES ====================

    @abstractmethod
    def find_all_scopes(self) -> List[Scope]:
        pass

    @abstractmethod
    def find_scope(self, name: str) -> Optional[Scope]:
        pass

    def find_scopes_by_grant_type(self, grant_type: str) -> List[Scope]:
        """Scopes whose own flag for ``grant_type`` is enabled"""
        return [scope for scope in self.find_all_scopes() if scope.is_enabled_for(grant_type)]


class SQLAlchemyRepository(OAuthRepository):
    """
    Repository over a SQLAlchemy session factory.

    Each call runs in its own short session; returned objects are detached
    and safe to read after the session closes.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _run(self, operation: str, fn, write: bool = False):
        session = self._session_factory()
        try:
            result = fn(session)
            if write:
                session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[REPOSITORY] {operation} failed: {type(e).__name__}: {e}")
            raise RepositoryUnavailable(f"{operation} failed") from e
        finally:
            session.close()

    def find_token_by_id(self, token_id: str) -> Optional[Token]:
        return self._run("find_token_by_id", lambda s: s.get(Token, token_id))

    def find_tokens_by_account(self, user_id: str) -> List[Token]:
        return self._run(
            "find_tokens_by_account",
            lambda s: s.query(Token).filter(Token.user_id == user_id).all(),
        )

    def find_tokens_by_client(self, client_id: str) -> List[Token]:
        return self._run(
            "find_tokens_by_client",
            lambda s: s.query(Token).filter(Token.client_id == client_id).all(),
        )

    def find_expired_tokens(self, now: int, limit: int = 0) -> List[Token]:
        def query(session):
            q = (
                session.query(Token)
                .filter(or_(Token.expires_at < now, Token.revoked.is_(True)))
                .order_by(Token.expires_at.asc(), Token.value.asc())
            )
            if limit:
                q = q.limit(limit)
            return q.all()

        return self._run("find_expired_tokens", query)

    def revoke_token(self, token_id: str) -> bool:
        def conditional_update(session):
            result = session.execute(
                update(Token)
                .where(Token.value == token_id, Token.revoked.is_(False))
                .values(revoked=True)
            )
            return result.rowcount > 0

        return self._run("revoke_token", conditional_update, write=True)

    def delete(self, tokens: Iterable[Token]) -> int:
        ids = [token.value for token in tokens]
        if not ids:
            return 0

        def bulk_delete(session):
            return (
                session.query(Token)
                .filter(Token.value.in_(ids))
                .delete(synchronize_session=False)
            )

        return self._run("delete", bulk_delete, write=True)

    def save(self, entity) -> None:
        self._run("save", lambda s: s.merge(entity), write=True)

    def find_consumer_by_client_id(self, client_id: str) -> Optional[Consumer]:
        return self._run(
            "find_consumer_by_client_id",
            lambda s: s.query(Consumer).filter(Consumer.client_id == client_id).first(),
        )

    def find_account(self, user_id: str) -> Optional[Account]:
        return self._run("find_account", lambda s: s.get(Account, user_id))

    def find_role(self, role_id: str) -> Optional[Role]:
        return self._run("find_role", lambda s: s.get(Role, role_id))

    def find_all_scopes(self) -> List[Scope]:
        return self._run("find_all_scopes", lambda s: s.query(Scope).order_by(Scope.name).all())

    def find_scope(self, name: str) -> Optional[Scope]:
        return self._run(
            "find_scope",
            lambda s: s.query(Scope).filter(Scope.name == name).first(),
        )


class InMemoryRepository(OAuthRepository):
    """
    Dict-backed repository.
    WARNING: single-instance only and data is lost on restart.
    """

    def __init__(self):
        self.tokens = {}  # value -> Token
        self.consumers = {}  # client_id -> Consumer
        self.accounts = {}  # user_id -> Account
        self.roles = {}  # role_id -> Role
        self.scopes = {}  # name -> Scope
        self.lock = threading.Lock()

    def find_token_by_id(self, token_id: str) -> Optional[Token]:
        with self.lock:
            return self.tokens.get(token_id)

    def find_tokens_by_account(self, user_id: str) -> List[Token]:
        with self.lock:
            return [t for t in self.tokens.values() if t.user_id == user_id]

    def find_tokens_by_client(self, client_id: str) -> List[Token]:
        with self.lock:
            return [t for t in self.tokens.values() if t.client_id == client_id]

    def find_expired_tokens(self, now: int, limit: int = 0) -> List[Token]:
        with self.lock:
            expired = [t for t in self.tokens.values() if t.expires_at < now or t.revoked]
        expired.sort(key=lambda t: (t.expires_at, t.value))
        return expired[:limit] if limit else expired

    def revoke_token(self, token_id: str) -> bool:
        with self.lock:
            token = self.tokens.get(token_id)
            if token is None or token.revoked:
                return False
            token.revoked = True
            return True

    def delete(self, tokens: Iterable[Token]) -> int:
        removed = 0
        with self.lock:
            for token in tokens:
                if self.tokens.pop(token.value, None) is not None:
                    removed += 1
        return removed

    def save(self, entity) -> None:
        with self.lock:
            if isinstance(entity, Token):
                self.tokens[entity.value] = entity
            elif isinstance(entity, Consumer):
                self.consumers[entity.client_id] = entity
            elif isinstance(entity, Account):
                self.accounts[entity.user_id] = entity
            elif isinstance(entity, Role):
                self.roles[entity.role_id] = entity
            elif isinstance(entity, Scope):
                self.scopes[entity.name] = entity
            else:
                raise TypeError(f"Cannot store {type(entity).__name__}")

    def find_consumer_by_client_id(self, client_id: str) -> Optional[Consumer]:
        with self.lock:
            return self.consumers.get(client_id)

    def find_account(self, user_id: str) -> Optional[Account]:
        with self.lock:
            return self.accounts.get(user_id)

    def find_role(self, role_id: str) -> Optional[Role]:
        with self.lock:
            return self.roles.get(role_id)

    def find_all_scopes(self) -> List[Scope]:
        with self.lock:
            return sorted(self.scopes.values(), key=lambda s: s.name)

    def find_scope(self, name: str) -> Optional[Scope]:
        with self.lock:
            return self.scopes.get(name)
