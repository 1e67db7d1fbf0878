"""Pin GitHub Action references to commit SHAs.

A pinned reference has the form `owner/repo@<sha> # <version>`. Resolution
tries, in order:

1. the dynamic resolver, if one is configured (skipped for full SHAs)
2. the bundled catalog, exact `repo@version` match
3. a full-SHA version, kept as-is (annotated with the catalog version if known)
4. outside strict mode, the best catalog pin for the repo: the highest
   semver-compatible (same major) version, else the highest version

Anything that can't be pinned is a hard error in strict mode. Otherwise a
warning is emitted once per `repo@version` and the caller gets "".
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import cmp_to_key, lru_cache
from importlib import resources
from typing import Any, Protocol

from .errors import ActionPinError
from .output import get_output_manager

logger = logging.getLogger(__name__)

_FULL_SHA_RE = re.compile(r"^[0-9a-f]{40}$")


@dataclass(frozen=True)
class ActionPin:
    """A catalog entry: one version of an action and the commit it points at."""

    repo: str
    version: str
    sha: str

    @property
    def reference(self) -> str:
        return format_action_reference(self.repo, self.sha, self.version)


class ActionResolver(Protocol):
    """Resolves a version tag to a commit SHA, e.g. through the GitHub API."""

    def resolve_sha(self, repo: str, version: str) -> str | None:
        """Return the full commit SHA for `repo@version`, or None if unknown."""
        ...


# =============================================================================
# Reference helpers
# =============================================================================


def format_action_reference(repo: str, sha: str, version: str) -> str:
    return f"{repo}@{sha} # {version}"


def format_action_cache_key(repo: str, version: str) -> str:
    return f"{repo}@{version}"


def extract_action_repo(uses: str) -> str:
    """`owner/repo@ref` -> `owner/repo` (the whole string if there is no `@`)."""
    return uses.split("@", 1)[0]


def extract_action_version(uses: str) -> str:
    """`owner/repo@ref` -> `ref` ("" if there is no `@`)."""
    parts = uses.split("@", 1)
    return parts[1] if len(parts) == 2 else ""


def is_valid_full_sha(value: str) -> bool:
    return bool(_FULL_SHA_RE.match(value))


def _version_parts(version: str) -> list[int]:
    parts = []
    for piece in version.lstrip("v").split("."):
        digits = re.match(r"\d+", piece)
        parts.append(int(digits.group()) if digits else 0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """
    Compare two `vMAJOR.MINOR.PATCH` style versions.

    Missing components count as zero, so `v4` == `v4.0.0`.

    Returns:
        -1, 0 or 1 as `a` is lower than, equal to or higher than `b`.

    """
    pa, pb = _version_parts(a), _version_parts(b)
    width = max(len(pa), len(pb))
    pa += [0] * (width - len(pa))
    pb += [0] * (width - len(pb))
    return (pa > pb) - (pa < pb)


def is_semver_compatible(pin_version: str, requested_version: str) -> bool:
    """Same major version."""
    return _version_parts(pin_version)[0] == _version_parts(requested_version)[0]


# =============================================================================
# Catalog
# =============================================================================


class ActionPinCatalog:
    """Read-only catalog of known pins, sorted by version descending, then repo."""

    def __init__(self, pins: list[ActionPin]):
        ordered = sorted(pins, key=cmp_to_key(_compare_pins))
        self.pins: tuple[ActionPin, ...] = tuple(ordered)
        self._by_key = {format_action_cache_key(p.repo, p.version): p for p in self.pins}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionPinCatalog:
        entries = data.get("entries", {})
        return cls([ActionPin(repo=e["repo"], version=e["version"], sha=e["sha"]) for e in entries.values()])

    @classmethod
    def load_bundled(cls) -> ActionPinCatalog:
        text = resources.files("aw_compiler").joinpath("data", "action_pins.json").read_text(encoding="utf-8")
        catalog = cls.from_dict(json.loads(text))
        logger.debug("Loaded %d bundled action pins", len(catalog.pins))
        return catalog

    def get(self, repo: str, version: str) -> ActionPin | None:
        return self._by_key.get(format_action_cache_key(repo, version))

    def for_repo(self, repo: str) -> list[ActionPin]:
        """Pins for `repo`, highest version first."""
        return [p for p in self.pins if p.repo == repo]

    def find_sha(self, repo: str, sha: str) -> ActionPin | None:
        for pin in self.pins:
            if pin.repo == repo and pin.sha == sha:
                return pin
        return None

    def latest(self, repo: str) -> ActionPin | None:
        pins = self.for_repo(repo)
        return pins[0] if pins else None


def _compare_pins(a: ActionPin, b: ActionPin) -> int:
    by_version = compare_versions(b.version, a.version)
    if by_version:
        return by_version
    return (a.repo > b.repo) - (a.repo < b.repo)


@lru_cache(maxsize=None)
def get_catalog() -> ActionPinCatalog:
    """The bundled catalog, loaded on first use."""
    return ActionPinCatalog.load_bundled()


def get_action_pin(repo: str) -> str:
    """
    Pinned reference for the latest catalog version of `repo`.

    Returns:
        `repo@sha # version`, or "" if the catalog has no entry for `repo`.

    """
    pin = get_catalog().latest(repo)
    return pin.reference if pin else ""


# =============================================================================
# Resolution
# =============================================================================


@dataclass
class PinContext:
    """Per-compilation pinning state."""

    strict: bool = False
    resolver: ActionResolver | None = None
    catalog: ActionPinCatalog | None = None
    """Defaults to the bundled catalog."""

    warned: set[str] = field(default_factory=set)
    """`repo@version` keys already warned about."""

    def get_catalog(self) -> ActionPinCatalog:
        return self.catalog if self.catalog is not None else get_catalog()

    def warn_once(self, key: str, message: str) -> None:
        if key in self.warned:
            return
        self.warned.add(key)
        get_output_manager().warning(message)


def resolve_action_pin(repo: str, version: str, ctx: PinContext) -> str:
    """
    Resolve `repo@version` to a pinned reference.

    Args:
        repo: `owner/repo` (or `owner/repo/path` for actions in subdirectories).
        version: A tag, branch or full commit SHA.
        ctx: Pinning state of the current compilation.

    Returns:
        The pinned reference, or "" when it can't be pinned outside strict mode.

    Raises:
        ActionPinError: In strict mode, when no exact pin is available.

    """
    key = format_action_cache_key(repo, version)
    catalog = ctx.get_catalog()
    full_sha = is_valid_full_sha(version)

    if ctx.resolver is not None and not full_sha:
        sha = ctx.resolver.resolve_sha(repo, version)
        if sha:
            logger.debug("Resolved %s dynamically to %s", key, sha)
            return format_action_reference(repo, sha, version)

    exact = catalog.get(repo, version)
    if exact is not None:
        return format_action_reference(repo, exact.sha, version)

    if full_sha:
        known = catalog.find_sha(repo, version)
        return format_action_reference(repo, version, known.version if known else version)

    if not ctx.strict:
        candidates = catalog.for_repo(repo)
        if candidates:
            compatible = [p for p in candidates if is_semver_compatible(p.version, version)]
            best = compatible[0] if compatible else candidates[0]
            ctx.warn_once(
                key,
                f"Unable to resolve {key} dynamically, using hardcoded pin for {repo}@{best.version}",
            )
            return format_action_reference(repo, best.sha, version)

    message = f"Unable to pin action {key}"
    if ctx.strict:
        if ctx.resolver is not None:
            message += ": resolution failed"
        raise ActionPinError(repo, version, message)

    ctx.warn_once(key, message)
    return ""


def is_pinnable(uses: str) -> bool:
    """Local actions and container images are not pinned."""
    return bool(uses) and not uses.startswith(("./", "docker://")) and "@" in uses


def pin_uses(uses: str, ctx: PinContext) -> str:
    """Pin a `uses:` value, leaving it unchanged if it can't be pinned."""
    if not is_pinnable(uses):
        return uses
    resolved = resolve_action_pin(extract_action_repo(uses), extract_action_version(uses), ctx)
    return resolved or uses


def apply_action_pin_to_step(step: dict[str, Any], ctx: PinContext) -> dict[str, Any]:
    """Return a copy of a raw step with its `uses:` pinned."""
    uses = step.get("uses")
    if not isinstance(uses, str):
        return step
    pinned = pin_uses(uses, ctx)
    if pinned == uses:
        return step
    result = dict(step)
    result["uses"] = pinned
    return result
