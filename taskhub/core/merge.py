"""Merge utilities for TaskHub.

Line based text merging with conflict markers, and field level merging of
entity payloads used by the merge_changes conflict strategy.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import IGNORED_COMPARE_FIELDS, TEXT_FIELDS

__all__ = [
    "MergeResult",
    "EntityMergeResult",
    "merge_content",
    "diff3_merge",
    "changed_fields",
    "merge_entity_data",
]

LOCAL_MARKER = "<<<<<<< {label}"
SEPARATOR = "======="
REMOTE_MARKER = ">>>>>>> {label}"


@dataclass
class MergeResult:
    """Result of a merge operation.

    Attributes:
        content: The merged content (may contain conflict markers if conflicted)
        has_conflicts: True if the merge produced conflicts
        conflict_count: Number of conflict regions in the merge
    """

    content: str
    has_conflicts: bool
    conflict_count: int


def _conflict_block(
    local_lines: List[str], remote_lines: List[str], local_label: str, remote_label: str
) -> List[str]:
    return (
        [LOCAL_MARKER.format(label=local_label)]
        + local_lines
        + [SEPARATOR]
        + remote_lines
        + [REMOTE_MARKER.format(label=remote_label)]
    )


def merge_content(
    local: str,
    remote: str,
    local_label: str = "LOCAL",
    remote_label: str = "REMOTE",
) -> MergeResult:
    """Merge two versions of text content.

    Compares local and remote line-by-line. Lines that match are kept as-is.
    Lines that differ get wrapped in conflict markers to preserve both versions.

    Args:
        local: The local version (current device's content)
        remote: The remote version (other device's content)
        local_label: Label for local version in conflict markers
        remote_label: Label for remote version in conflict markers

    Returns:
        MergeResult with merged content and conflict status
    """
    if local == remote:
        return MergeResult(content=local, has_conflicts=False, conflict_count=0)

    local_lines = local.splitlines()
    remote_lines = remote.splitlines()
    matcher = difflib.SequenceMatcher(a=local_lines, b=remote_lines, autojunk=False)

    merged: List[str] = []
    conflicts = 0
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            merged.extend(local_lines[i1:i2])
        else:
            conflicts += 1
            merged.extend(
                _conflict_block(local_lines[i1:i2], remote_lines[j1:j2], local_label, remote_label)
            )

    return MergeResult(
        content="\n".join(merged),
        has_conflicts=conflicts > 0,
        conflict_count=conflicts,
    )


# A hunk replaces base[start:end] with lines.
Hunk = Tuple[int, int, List[str]]


def _hunks(base_lines: List[str], other_lines: List[str]) -> List[Hunk]:
    matcher = difflib.SequenceMatcher(a=base_lines, b=other_lines, autojunk=False)
    return [
        (i1, i2, other_lines[j1:j2])
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _apply_hunks(base_lines: List[str], start: int, end: int, hunks: Iterable[Hunk]) -> List[str]:
    """Rebuild base[start:end] with the given (sorted) hunks applied."""
    result: List[str] = []
    cursor = start
    for i1, i2, lines in hunks:
        result.extend(base_lines[cursor:i1])
        result.extend(lines)
        cursor = i2
    result.extend(base_lines[cursor:end])
    return result


def diff3_merge(base: str, local: str, remote: str) -> MergeResult:
    """Perform a 3-way merge of text content.

    Edits made by only one side are taken as they are. If both sides made
    the same edit it is accepted once. If they made different edits to the
    same region, conflict markers are added around that region only.

    Args:
        base: Original content (common ancestor)
        local: Local version
        remote: Remote version

    Returns:
        MergeResult with merged content and conflict info
    """
    # If no base, use simple merge
    if not base:
        return merge_content(local, remote, "LOCAL", "REMOTE")

    if local == base or local == remote:
        return MergeResult(content=remote, has_conflicts=False, conflict_count=0)

    if remote == base:
        return MergeResult(content=local, has_conflicts=False, conflict_count=0)

    base_lines = base.splitlines()
    tagged = sorted(
        [(h, "local") for h in _hunks(base_lines, local.splitlines())]
        + [(h, "remote") for h in _hunks(base_lines, remote.splitlines())],
        key=lambda item: (item[0][0], item[0][1]),
    )

    merged: List[str] = []
    conflicts = 0
    position = 0
    index = 0
    while index < len(tagged):
        (start, end, _), _side = tagged[index]
        group = [tagged[index]]
        index += 1
        # Pull in every hunk that touches the region so far
        while index < len(tagged):
            (h_start, h_end, _), _ = tagged[index]
            touches = h_start < end or (h_start == end and (h_start == h_end or start == end))
            if not touches:
                break
            group.append(tagged[index])
            end = max(end, h_end)
            index += 1

        merged.extend(base_lines[position:start])
        local_hunks = [h for h, side in group if side == "local"]
        remote_hunks = [h for h, side in group if side == "remote"]
        local_region = _apply_hunks(base_lines, start, end, local_hunks)
        remote_region = _apply_hunks(base_lines, start, end, remote_hunks)

        if not remote_hunks or local_region == remote_region:
            merged.extend(local_region)
        elif not local_hunks:
            merged.extend(remote_region)
        else:
            conflicts += 1
            merged.extend(_conflict_block(local_region, remote_region, "LOCAL", "REMOTE"))
        position = end

    merged.extend(base_lines[position:])
    return MergeResult(
        content="\n".join(merged),
        has_conflicts=conflicts > 0,
        conflict_count=conflicts,
    )


def changed_fields(
    first: Dict[str, Any],
    second: Dict[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> List[str]:
    """List the fields whose values differ between two payloads.

    Bookkeeping timestamps (created_at, updated_at, joined_at) are ignored.
    If ``fields`` is given only those are compared.
    """
    keys = list(fields) if fields else sorted(set(first) | set(second))
    return [
        key for key in keys
        if key not in IGNORED_COMPARE_FIELDS and first.get(key) != second.get(key)
    ]


@dataclass
class EntityMergeResult:
    """Result of merging two versions of an entity payload.

    Attributes:
        data: Merged payload
        conflicted_fields: Text fields that still carry conflict markers
    """

    data: Dict[str, Any]
    conflicted_fields: List[str] = field(default_factory=list)


def merge_entity_data(
    client_data: Dict[str, Any],
    server_data: Dict[str, Any],
    client_timestamp: str,
    server_timestamp: str,
    base_data: Optional[Dict[str, Any]] = None,
) -> EntityMergeResult:
    """Merge client and server versions of an entity field by field.

    Rules, per field:
      * equal values are kept;
      * with a base version, a field changed on one side only takes that side;
      * text fields changed on both sides are merged line by line;
      * any other field changed on both sides takes the newer value
        (ties go to the server).
    """
    base = base_data or {}
    client_newer = client_timestamp > server_timestamp
    merged: Dict[str, Any] = {}
    conflicted: List[str] = []

    for key in list(server_data) + [k for k in client_data if k not in server_data]:
        client_value = client_data.get(key, server_data.get(key))
        server_value = server_data.get(key, client_data.get(key))
        if client_value == server_value:
            merged[key] = server_value
            continue
        if key in base:
            if client_value == base[key]:
                merged[key] = server_value
                continue
            if server_value == base[key]:
                merged[key] = client_value
                continue
        if key in TEXT_FIELDS and isinstance(client_value, str) and isinstance(server_value, str):
            result = diff3_merge(base.get(key) or "", client_value, server_value)
            merged[key] = result.content
            if result.has_conflicts:
                conflicted.append(key)
            continue
        merged[key] = client_value if client_newer else server_value

    return EntityMergeResult(data=merged, conflicted_fields=conflicted)
