"""GitHub Actions job permissions.

A permission set is either a shorthand (`read-all`, `write-all`, `none`) or an
explicit mapping of scope to level. Sets are built incrementally while a job is
assembled and merged with these rules:

- shorthand + shorthand: the higher shorthand wins (write-all > read-all > none)
- shorthand + map: the map replaces the shorthand
- map + shorthand: every scope missing from the map is added at the shorthand's
  level; existing entries are kept; `none` adds nothing; `id-token` is only
  added for `write-all` since it has no read level
- map + map: per scope, the higher level wins (write > read > none)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class PermissionLevel(str, Enum):
    """Access level for a single scope."""

    NONE = "none"
    READ = "read"
    WRITE = "write"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


class PermissionShorthand(str, Enum):
    """Whole-token permission shorthands."""

    NONE = "none"
    READ_ALL = "read-all"
    WRITE_ALL = "write-all"

    @property
    def rank(self) -> int:
        return _SHORTHAND_RANK[self]

    @property
    def level(self) -> PermissionLevel:
        """The per-scope level this shorthand grants."""
        return _SHORTHAND_LEVEL[self]


class PermissionScope(str, Enum):
    """Permission scopes accepted in a `permissions:` block."""

    ACTIONS = "actions"
    ATTESTATIONS = "attestations"
    CHECKS = "checks"
    CONTENTS = "contents"
    DEPLOYMENTS = "deployments"
    DISCUSSIONS = "discussions"
    ID_TOKEN = "id-token"
    ISSUES = "issues"
    METADATA = "metadata"
    MODELS = "models"
    ORGANIZATION_PACKAGES = "organization-packages"
    ORGANIZATION_PROJECTS = "organization-projects"
    PACKAGES = "packages"
    PAGES = "pages"
    PULL_REQUESTS = "pull-requests"
    REPOSITORY_PROJECTS = "repository-projects"
    SECURITY_EVENTS = "security-events"
    STATUSES = "statuses"


_LEVEL_RANK = {PermissionLevel.NONE: 0, PermissionLevel.READ: 1, PermissionLevel.WRITE: 2}
_SHORTHAND_RANK = {PermissionShorthand.NONE: 0, PermissionShorthand.READ_ALL: 1, PermissionShorthand.WRITE_ALL: 2}
_SHORTHAND_LEVEL = {
    PermissionShorthand.NONE: PermissionLevel.NONE,
    PermissionShorthand.READ_ALL: PermissionLevel.READ,
    PermissionShorthand.WRITE_ALL: PermissionLevel.WRITE,
}

WRITE_ONLY_SCOPES = frozenset({PermissionScope.ID_TOKEN})
"""Scopes without a `read` level."""

EXPANDABLE_SCOPES: tuple[PermissionScope, ...] = tuple(
    scope for scope in PermissionScope if scope is not PermissionScope.ORGANIZATION_PACKAGES
)
"""Scopes a shorthand expands to. `organization-packages` is only ever granted explicitly."""


def _scopes_for_level(level: PermissionLevel) -> list[PermissionScope]:
    if level == PermissionLevel.NONE:
        return []
    return [s for s in EXPANDABLE_SCOPES if not (level == PermissionLevel.READ and s in WRITE_ONLY_SCOPES)]


class Permissions:
    """
    A mutable permission set for one job.

    Exactly one of these modes is active:
    - shorthand: `shorthand` is set, `scopes` is empty
    - map: `shorthand` is None; `scopes` holds explicit entries and
      `all_level` optionally grants a level to every other expandable scope
      (the `all: read` form)
    """

    def __init__(
        self,
        *,
        shorthand: PermissionShorthand | None = None,
        scopes: Mapping[PermissionScope, PermissionLevel] | None = None,
        all_level: PermissionLevel | None = None,
    ):
        if shorthand is not None and (scopes or all_level is not None):
            raise ValueError("A shorthand permission set cannot also carry scopes")
        self.shorthand = shorthand
        self.scopes: dict[PermissionScope, PermissionLevel] = dict(scopes or {})
        self.all_level = all_level

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def new(cls) -> Permissions:
        """Empty explicit map."""
        return cls()

    @classmethod
    def read_all(cls) -> Permissions:
        return cls(shorthand=PermissionShorthand.READ_ALL)

    @classmethod
    def write_all(cls) -> Permissions:
        return cls(shorthand=PermissionShorthand.WRITE_ALL)

    @classmethod
    def none(cls) -> Permissions:
        return cls(shorthand=PermissionShorthand.NONE)

    @classmethod
    def from_map(cls, scopes: Mapping[PermissionScope, PermissionLevel]) -> Permissions:
        return cls(scopes=scopes)

    @classmethod
    def all_read(cls) -> Permissions:
        """Every scope at `read` (except `id-token`), open to per-scope overrides."""
        return cls(all_level=PermissionLevel.READ)

    @classmethod
    def contents_read(cls) -> Permissions:
        return cls(scopes={PermissionScope.CONTENTS: PermissionLevel.READ})

    @classmethod
    def from_config(cls, value: Any) -> Permissions:
        """
        Build a permission set from a frontmatter `permissions:` value.

        Args:
            value: A shorthand string, or a mapping of scope name to level. The
                mapping may contain `all: read` to grant read on every scope.

        Raises:
            ConfigurationError: On unknown scopes, levels or shorthands.

        """
        if value is None:
            return cls()
        if isinstance(value, str):
            try:
                return cls(shorthand=PermissionShorthand(value.strip()))
            except ValueError as err:
                raise ConfigurationError(f"unknown permissions shorthand {value!r}") from err
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"permissions must be a string or a mapping, got {type(value).__name__}")

        perms = cls()
        for key, raw_level in value.items():
            try:
                level = PermissionLevel(str(raw_level))
            except ValueError as err:
                raise ConfigurationError(f"unknown permission level {raw_level!r} for {key!r}") from err
            if key == "all":
                if level != PermissionLevel.READ:
                    raise ConfigurationError("permissions.all only supports 'read'")
                perms.all_level = level
                continue
            try:
                scope = PermissionScope(key)
            except ValueError as err:
                raise ConfigurationError(f"unknown permission scope {key!r}") from err
            if scope in WRITE_ONLY_SCOPES and level == PermissionLevel.READ:
                raise ConfigurationError(f"permission scope {scope.value!r} does not support 'read'")
            perms.scopes[scope] = level
        return perms

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    @property
    def is_shorthand(self) -> bool:
        return self.shorthand is not None

    def get(self, scope: PermissionScope) -> PermissionLevel | None:
        """
        Effective level of `scope`, or None if the set does not mention it.

        Shorthands synthesize the level; `read-all` reports `id-token` as
        absent since that scope has no read level.
        """
        if self.shorthand is not None:
            return self._implied_level(self.shorthand.level, scope)
        if scope in self.scopes:
            return self.scopes[scope]
        if self.all_level is not None:
            return self._implied_level(self.all_level, scope)
        return None

    @staticmethod
    def _implied_level(level: PermissionLevel, scope: PermissionScope) -> PermissionLevel | None:
        if level == PermissionLevel.READ and scope in WRITE_ONLY_SCOPES:
            return None
        return level

    def set(self, scope: PermissionScope, level: PermissionLevel) -> None:
        """
        Set one scope, converting a shorthand set into map form first.

        Raises:
            ConfigurationError: When `scope` has no `read` level and `level` is `read`.

        """
        if scope in WRITE_ONLY_SCOPES and level == PermissionLevel.READ:
            raise ConfigurationError(f"permission scope {scope.value!r} does not support 'read'")
        if self.shorthand is not None:
            shorthand = self.shorthand
            self.shorthand = None
            self.scopes = {}
            if shorthand != PermissionShorthand.NONE:
                self.all_level = shorthand.level
        self.scopes[scope] = level

    def to_map(self) -> dict[PermissionScope, PermissionLevel]:
        """Fully expanded scope map (shorthands and `all:` included)."""
        if self.shorthand is not None:
            return {s: self.shorthand.level for s in _scopes_for_level(self.shorthand.level)}
        expanded: dict[PermissionScope, PermissionLevel] = {}
        if self.all_level is not None:
            expanded = {s: self.all_level for s in _scopes_for_level(self.all_level)}
        expanded.update(self.scopes)
        return expanded

    def copy(self) -> Permissions:
        return Permissions(shorthand=self.shorthand, scopes=self.scopes, all_level=self.all_level)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Permissions):
            return NotImplemented
        return (self.shorthand, self.scopes, self.all_level) == (other.shorthand, other.scopes, other.all_level)

    def __repr__(self) -> str:
        if self.shorthand is not None:
            return f"Permissions({self.shorthand.value})"
        return f"Permissions({self.to_yaml_value()})"

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def merge(self, incoming: Permissions | None) -> None:
        """Merge `incoming` into this set in place (see module docstring)."""
        if incoming is None:
            return

        if self.shorthand is not None and incoming.shorthand is not None:
            if incoming.shorthand.rank > self.shorthand.rank:
                self.shorthand = incoming.shorthand
            return

        if self.shorthand is not None:
            logger.debug("Replacing shorthand %s with explicit permissions", self.shorthand.value)
            self.shorthand = None
            self.scopes = incoming.to_map() if incoming.all_level is not None else dict(incoming.scopes)
            self.all_level = None
            return

        self._materialize()

        if incoming.shorthand is not None:
            for scope in _scopes_for_level(incoming.shorthand.level):
                self.scopes.setdefault(scope, incoming.shorthand.level)
            return

        for scope, level in incoming.to_map().items():
            current = self.scopes.get(scope)
            if current is None or level.rank > current.rank:
                self.scopes[scope] = level

    def _materialize(self) -> None:
        """Fold `all_level` into explicit entries."""
        if self.all_level is not None:
            self.scopes = self.to_map()
            self.all_level = None

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def to_yaml_value(self) -> str | dict[str, str]:
        """Value for a `permissions:` key: a shorthand string or a sorted scope map."""
        if self.shorthand is not None:
            return self.shorthand.value
        return {scope.value: level.value for scope, level in sorted(self.to_map().items(), key=lambda kv: kv[0].value)}

    def render_to_yaml(self, indent: str = "  ") -> str:
        """Render as a standalone `permissions:` YAML block."""
        value = self.to_yaml_value()
        if isinstance(value, str):
            return f"permissions: {value}"
        if not value:
            return "permissions: {}"
        lines = ["permissions:"]
        lines.extend(f"{indent}{scope}: {level}" for scope, level in value.items())
        return "\n".join(lines)


def merge_permissions(*sets: Permissions | None) -> Permissions:
    """Merge several permission sets left to right into a new set."""
    result = Permissions()
    first = True
    for perms in sets:
        if perms is None:
            continue
        if first:
            result = perms.copy()
            first = False
        else:
            result.merge(perms)
    return result
