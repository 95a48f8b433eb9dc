"""Ignore directives and the persisted per-target ignore file.

An ``IgnoreMap`` maps a group id to the set of check ids to suppress in that
group. An empty set is the wildcard: every check in the group is suppressed.

The ignore file is YAML keyed by target attribute::

    webserver:
      hardware_configuration: []
      remote_deployment:
        - ssh_enabled
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from nxdeploy.core.errors import (
    EmptyCheckError,
    EmptyGroupError,
    IgnoreFileError,
    NoGroupError,
)
from nxdeploy.core.io import atomic_open
from nxdeploy.core.logger import LoggerProxy

if TYPE_CHECKING:
    from nxdeploy.checks.engine import CheckGroupResult
    from nxdeploy.core.types import TargetRef

log = LoggerProxy(__name__)

WILDCARD = "*"


class IgnoreMap(Mapping[str, frozenset[str]]):
    """Immutable group -> checks mapping; an empty check set ignores the whole group."""

    __slots__ = ("_groups",)

    def __init__(self, groups: Mapping[str, Any] | None = None):
        self._groups: dict[str, frozenset[str]] = {
            group: frozenset(checks) for group, checks in (groups or {}).items()
        }

    def __getitem__(self, group: str) -> frozenset[str]:
        return self._groups[group]

    def __iter__(self) -> Iterator[str]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __hash__(self) -> int:
        return hash(frozenset(self._groups.items()))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, IgnoreMap):
            return self._groups == other._groups
        return NotImplemented

    def __repr__(self) -> str:
        return f"IgnoreMap({self.to_dict()!r})"

    def is_wildcard(self, group: str) -> bool:
        return group in self._groups and not self._groups[group]

    def suppresses(self, group: str, check: str) -> bool:
        checks = self._groups.get(group)
        if checks is None:
            return False
        return not checks or check in checks

    def merge(self, other: IgnoreMap) -> IgnoreMap:
        return merge_ignore_maps(self, other)

    def to_dict(self) -> dict[str, list[str]]:
        return {group: sorted(self._groups[group]) for group in sorted(self._groups)}


def parse_ignore_string(text: str) -> IgnoreMap:
    """
    Parse ``group.check,group2.*`` into an IgnoreMap.

    Items are trimmed and empty items skipped. A ``group.*`` item makes the
    group a wildcard regardless of where it appears in the list.
    """
    groups: dict[str, set[str]] = {}
    wildcards: set[str] = set()

    for raw in text.split(","):
        item = raw.strip()
        if not item:
            continue

        parts = item.split(".")
        if len(parts) != 2:
            raise NoGroupError(item)
        group, check = parts[0].strip(), parts[1].strip()
        if not group:
            raise EmptyGroupError(item)
        if not check:
            raise EmptyCheckError(item)

        if check == WILDCARD:
            wildcards.add(group)
            groups[group] = set()
        elif group not in wildcards:
            groups.setdefault(group, set()).add(check)

    return IgnoreMap(groups)


def merge_ignore_maps(first: IgnoreMap, second: IgnoreMap) -> IgnoreMap:
    """Union of two maps per group; a wildcard on either side wins."""
    merged: dict[str, frozenset[str]] = {}
    for group in set(first) | set(second):
        if first.is_wildcard(group) or second.is_wildcard(group):
            merged[group] = frozenset()
        else:
            merged[group] = first.get(group, frozenset()) | second.get(group, frozenset())
    return IgnoreMap(merged)


# ── Ignore file ─────────────────────────────────────────────────────────────
def _parse_store(data: Any, path: Path) -> dict[str, IgnoreMap]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise IgnoreFileError(f"{path}: expected a mapping of target attributes")

    store: dict[str, IgnoreMap] = {}
    for attribute, groups in data.items():
        if not isinstance(groups, dict):
            raise IgnoreFileError(f"{path}: entry '{attribute}' must map group ids to check lists")
        for group, checks in groups.items():
            if not isinstance(checks, list) or not all(isinstance(c, str) for c in checks):
                raise IgnoreFileError(
                    f"{path}: '{attribute}.{group}' must be a list of check ids"
                )
        store[str(attribute)] = IgnoreMap({str(g): c for g, c in groups.items()})
    return store


def load_ignore_file(path: Path | str) -> dict[str, IgnoreMap]:
    """Read the ignore file. A missing file yields an empty store."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.debug(f"No ignore file at {path}")
        return {}
    except OSError as e:
        raise IgnoreFileError(f"{path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise IgnoreFileError(f"{path}: invalid YAML: {e}") from e

    store = _parse_store(data, path)
    log.debug(f"Loaded ignore entries for {len(store)} target(s) from {path}")
    return store


def dump_ignore_store(store: Mapping[str, IgnoreMap], path: Path) -> None:
    data = {attribute: store[attribute].to_dict() for attribute in sorted(store)}
    with atomic_open(path) as handle:
        yaml.safe_dump(data, handle, default_flow_style=False, sort_keys=True)


def failing_ignore_map(results: Sequence[CheckGroupResult]) -> IgnoreMap:
    """Every failing check of one target, ignored or not, as an IgnoreMap."""
    groups: dict[str, list[str]] = {}
    for group in results:
        failing = [check.id for check in group.checks if not check.passed]
        if failing:
            groups[group.id] = failing
    return IgnoreMap(groups)


def save_failing_checks(
    path: Path | str,
    batch: Mapping[TargetRef, Sequence[CheckGroupResult]],
) -> dict[str, IgnoreMap]:
    """
    Record the current failures of each target in the ignore file.

    Each target's entry is replaced by exactly its currently failing checks,
    or removed when nothing fails. Entries for other targets are preserved.
    Returns the store that was written.
    """
    path = Path(path)
    existed = path.exists()
    store = load_ignore_file(path)

    for target, results in batch.items():
        failing = failing_ignore_map(results)
        if failing:
            store[target.attribute] = failing
        else:
            store.pop(target.attribute, None)

    if not store and not existed:
        log.debug("No failing checks to record; ignore file not created.")
        return store

    dump_ignore_store(store, path)
    log.info(f"Wrote ignore entries for {len(store)} target(s) to {path}")
    return store
