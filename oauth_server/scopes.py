"""
Scope registry.

Answers two questions: which scopes are offered under a grant type, and which
permissions (directly, or through a role) a scope confers.

Grant type filtering looks only at each scope's own ``grant_types`` map. A
consumer's enabled grant types never change which scopes are offered, so a
field filtered to ``client_credentials`` lists the same scopes on every
consumer, including consumers that have only ``authorization_code`` enabled.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

import yaml
from loguru import logger

from oauth_server.config import validate_grant_type
from oauth_server.models import GRANULARITY_PERMISSION, GRANULARITY_ROLE, LOCKED_ROLES, Scope
from oauth_server.repository import OAuthRepository

WILDCARD = "*"


# ==================== GRANULARITY ====================

@dataclass(frozen=True)
class Permission:
    permission: str


@dataclass(frozen=True)
class Role:
    role_id: str


Granularity = Union[Permission, Role]


def granularity_of(scope: Scope) -> Optional[Granularity]:
    """Tagged granularity of a scope, or None for umbrella scopes without one"""
    configuration = scope.granularity_configuration or {}
    if scope.granularity_id == GRANULARITY_PERMISSION:
        return Permission(configuration.get("permission", ""))
    if scope.granularity_id == GRANULARITY_ROLE:
        return Role(configuration.get("role", ""))
    return None


class ScopeRegistry:
    """Scope lookups and permission resolution over a repository."""

    def __init__(self, repository: OAuthRepository):
        self.repository = repository
        self._resolvers = {
            Permission: self._resolve_permission,
            Role: self._resolve_role,
        }

    # ==================== LOOKUPS ====================

    def list_all(self) -> List[Scope]:
        return self.repository.find_all_scopes()

    def list_by_grant_type(self, grant_type: Optional[str]) -> List[Scope]:
        """
        Scopes enabled for ``grant_type``.

        An empty grant type means no filter: every scope is returned whatever
        its per-grant-type flags say.
        """
        if not grant_type:
            return self.list_all()
        if not validate_grant_type(grant_type):
            logger.warning(f"[SCOPES] Filtering by unknown grant type: {grant_type}")
        return self.repository.find_scopes_by_grant_type(grant_type)

    def load(self, name: str) -> Optional[Scope]:
        return self.repository.find_scope(name)

    def load_multiple(self, names: Iterable[str]) -> List[Scope]:
        scopes = []
        for name in names:
            scope = self.repository.find_scope(name)
            if scope is None:
                logger.warning(f"[SCOPES] Unknown scope: {name}")
                continue
            scopes.append(scope)
        return scopes

    def children_of(self, scope: Scope) -> List[Scope]:
        return [s for s in self.list_all() if s.parent == scope.name]

    def expand(self, scopes: Iterable[Scope]) -> List[Scope]:
        """Scopes plus the children of any umbrella scope among them"""
        expanded: Dict[str, Scope] = {}
        pending = list(scopes)
        while pending:
            scope = pending.pop()
            if scope.name in expanded:
                continue
            expanded[scope.name] = scope
            if scope.umbrella:
                pending.extend(self.children_of(scope))
        return sorted(expanded.values(), key=lambda s: s.name)

    # ==================== PERMISSIONS ====================

    def permissions_for(self, scope: Scope, exclude_locked_roles: bool = False) -> Set[str]:
        """Permissions conferred by a scope (umbrella scopes: by their children)"""
        permissions: Set[str] = set()
        for member in self.expand([scope]):
            granularity = granularity_of(member)
            if granularity is None:
                continue
            permissions |= self._resolvers[type(granularity)](granularity, exclude_locked_roles)
        return permissions

    def _resolve_permission(self, granularity: Permission, exclude_locked_roles: bool) -> Set[str]:
        return {granularity.permission} if granularity.permission else set()

    def _resolve_role(self, granularity: Role, exclude_locked_roles: bool) -> Set[str]:
        if exclude_locked_roles and granularity.role_id in LOCKED_ROLES:
            return set()
        role = self.repository.find_role(granularity.role_id)
        if role is None:
            logger.warning(f"[SCOPES] Scope references missing role: {granularity.role_id}")
            return set()
        return set(role.permissions or [])

    def roles_for(self, scope: Scope, exclude_locked_roles: bool = False) -> List[str]:
        roles = set()
        for member in self.expand([scope]):
            granularity = granularity_of(member)
            if not isinstance(granularity, Role) or not granularity.role_id:
                continue
            if exclude_locked_roles and granularity.role_id in LOCKED_ROLES:
                continue
            roles.add(granularity.role_id)
        return sorted(roles)

    def scope_has_permission(self, permission: str, scope: Scope) -> bool:
        permissions = self.permissions_for(scope)
        return WILDCARD in permissions or permission in permissions

    # ==================== SEEDING ====================

    def sync(self, definitions: Iterable[Dict]) -> List[Scope]:
        """Create or update scopes from plain definitions"""
        saved = []
        for definition in definitions:
            scope = self.repository.find_scope(definition["name"])
            if scope is None:
                scope = Scope(name=definition["name"])
            for key in ("description", "umbrella", "parent", "granularity_id",
                        "granularity_configuration", "grant_types"):
                if key in definition:
                    setattr(scope, key, definition[key])
            self.repository.save(scope)
            saved.append(scope)
        logger.info(f"[SCOPES] Synced {len(saved)} scopes")
        return saved


class ScopeReferenceField:
    """
    Scope reference field configuration.

    ``filter_grant_type`` restricts the offered scopes to those enabled for
    that grant type; it is independent of the grant types enabled on the
    entity holding the field.
    """

    def __init__(self, filter_grant_type: str = ""):
        self.filter_grant_type = filter_grant_type

    def possible_options(self, registry: ScopeRegistry) -> Dict[str, str]:
        scopes = registry.list_by_grant_type(self.filter_grant_type)
        return {scope.name: scope.description or "" for scope in scopes}

    def possible_values(self, registry: ScopeRegistry) -> List[str]:
        return list(self.possible_options(registry))

    def invalid_values(self, values: Iterable[str], registry: ScopeRegistry) -> List[str]:
        allowed = set(self.possible_values(registry))
        return sorted(set(values) - allowed)


def load_scope_definitions(path) -> List[Dict]:
    """
    Read scope definitions from YAML.

    Expected layout::

        scopes:
          - name: content:read
            description: Read content
            grant_types:
              client_credentials: {status: true}
            granularity_id: permission
            granularity_configuration: {permission: access content}
    """
    try:
        with open(Path(path), "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(f"[SCOPES] Scope definitions file not found: {path}")
        raise

    definitions = data.get("scopes", []) if isinstance(data, dict) else data
    for definition in definitions:
        if "name" not in definition:
            raise ValueError(f"Scope definition without a name in {path}")
        granularity = definition.get("granularity_id")
        if granularity not in (None, GRANULARITY_PERMISSION, GRANULARITY_ROLE):
            raise ValueError(f"Invalid granularity {granularity!r} for scope {definition['name']}")
    return definitions
