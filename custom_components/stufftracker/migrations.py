"""Schema migrations for StuffTracker persistent storage.

Forward-only, idempotent migration steps. Each step receives and returns the
entire persisted dict payload. Steps must tolerate being applied more than once
without changing the outcome.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any


def migrate(payload: dict[str, Any], *, from_version: int, to_version: int) -> dict[str, Any]:
    """Migrate ``payload`` from ``from_version`` to ``to_version``.

    Steps are applied sequentially: vN -> vN+1 -> ... -> vM.
    """

    if from_version > to_version:
        # Downgrades are not supported; return the original as-is
        return payload

    data: dict[str, Any] = deepcopy(payload)
    version = int(from_version)
    while version < to_version:
        next_version = version + 1
        step = _STEPS.get(version)
        if step is not None:
            data = step(data)
        version = next_version

    data["schema_version"] = to_version
    return data


def migrate_0_to_1(payload: dict[str, Any]) -> dict[str, Any]:
    """Initial migration to v1.

    Ensures required top-level keys exist and drops nothing.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    data.setdefault("items", {})
    data.setdefault("locations", {})
    return data


def migrate_1_to_2(payload: dict[str, Any]) -> dict[str, Any]:
    """Materialize breadcrumb paths for every location.

    v1 rows only carried ``parent_id``; v2 stores ``path_ids``, ``path_names``
    and ``depth`` on each location. Paths are rebuilt from the parent chain,
    so rows with empty or stale paths are repaired too. A chain that reaches a
    missing parent, a parent of another owner, or loops back on itself is cut
    there and treated as a root.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    data.setdefault("items", {})
    locations = data.setdefault("locations", {})
    if not isinstance(locations, dict):
        return data

    rows = {str(k): v for k, v in locations.items() if isinstance(v, dict)}
    paths, detached = _resolve_paths(rows)
    for loc_id, row in rows.items():
        if loc_id in detached:
            row["parent_id"] = None
        ids, names = paths[loc_id]
        row["path_ids"] = ids
        row["path_names"] = names
        row["depth"] = len(ids) - 1
    return data


def _resolve_paths(
    rows: dict[str, dict[str, Any]],
) -> tuple[dict[str, tuple[list[str], list[str]]], set[str]]:
    """Return the path of every row and the rows whose parent link must be cut."""

    resolved: dict[str, tuple[list[str], list[str]]] = {}
    detached: set[str] = set()

    for start in rows:
        chain: list[str] = []
        seen: set[str] = set()
        cursor: str | None = start
        while cursor is not None and cursor in rows and cursor not in resolved:
            if cursor in seen:
                break
            seen.add(cursor)
            chain.append(cursor)
            parent = rows[cursor].get("parent_id")
            parent_row = rows.get(str(parent)) if parent is not None else None
            owner = rows[cursor].get("owner_id")
            if parent_row is not None and parent_row.get("owner_id") != owner:
                # Parent belongs to another owner
                detached.add(cursor)
                cursor = None
                break
            cursor = str(parent) if parent is not None else None

        base_ids: list[str] = []
        base_names: list[str] = []
        if cursor is not None and cursor in resolved:
            base_ids, base_names = resolved[cursor]
        elif cursor is not None and chain:
            # Missing parent or a loop back into the chain
            detached.add(chain[-1])
        for node_id in reversed(chain):
            base_ids = [*base_ids, node_id]
            base_names = [*base_names, str(rows[node_id].get("name", ""))]
            resolved[node_id] = (base_ids, base_names)
    return resolved, detached


_STEPS = {
    0: migrate_0_to_1,
    1: migrate_1_to_2,
}
