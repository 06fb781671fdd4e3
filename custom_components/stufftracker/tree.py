"""Location tree invariant engine.

Pure computations over the location tree: materialized path construction,
descendant enumeration, cycle detection, subtree path rebuilds, display tree
assembly and invariant auditing.

Nothing here performs I/O or mutates its inputs. Domain conditions are
reported through return values (``bool``, ``None``, violation lists); the
services decide which of them become errors and perform the writes.

Traversal always goes through a ``children_of`` lookup keyed by id so the
same code works against any store that can answer "which locations have this
parent".
"""

from __future__ import annotations

import uuid
from collections import defaultdict, deque
from collections.abc import Callable, Iterable

from .models import EMPTY_LOCATION_PATH, Location, LocationPath, LocationTreeNode

ChildrenLookup = Callable[[uuid.UUID], Iterable[uuid.UUID]]


def compute_path(
    parent_path: LocationPath | None, self_id: uuid.UUID, self_name: str
) -> LocationPath:
    """Append a node to its parent's materialized path.

    A ``None`` (or empty) parent path yields a root path of depth 0.
    """

    base = parent_path if parent_path is not None else EMPTY_LOCATION_PATH
    return LocationPath(ids=(*base.ids, self_id), names=(*base.names, self_name))


def enumerate_descendant_ids(root_id: uuid.UUID, children_of: ChildrenLookup) -> set[uuid.UUID]:
    """Collect all descendant ids of ``root_id`` (excluding the root itself).

    Breadth-first expansion of the child relation. The visited set guarantees
    termination even if the underlying data contains a cycle.
    """

    result: set[uuid.UUID] = set()
    queue: deque[uuid.UUID] = deque([root_id])
    while queue:
        current = queue.popleft()
        for child_id in children_of(current):
            if child_id == root_id or child_id in result:
                continue
            result.add(child_id)
            queue.append(child_id)
    return result


def would_create_cycle(
    moving_id: uuid.UUID, candidate_parent_id: uuid.UUID | None, children_of: ChildrenLookup
) -> bool:
    """Return True if re-parenting ``moving_id`` under the candidate forms a cycle.

    The candidate is checked against the moving node's descendants by expanding
    the child relation downward; walking ancestors upward cannot detect a move
    into one's own subtree.
    """

    if candidate_parent_id is None:
        return False
    if candidate_parent_id == moving_id:
        return True
    return candidate_parent_id in enumerate_descendant_ids(moving_id, children_of)


def replace_path_prefix(
    path: LocationPath, old_prefix: LocationPath, new_prefix: LocationPath
) -> LocationPath | None:
    """Swap ``old_prefix`` for ``new_prefix`` at the head of ``path``.

    Returns None when ``path`` does not start with ``old_prefix``.
    """

    size = len(old_prefix)
    if path.ids[:size] != old_prefix.ids or path.names[:size] != old_prefix.names:
        return None
    return LocationPath(
        ids=new_prefix.ids + path.ids[size:], names=new_prefix.names + path.names[size:]
    )


def _consistent_with_parent(path: LocationPath, parent_path: LocationPath, node: Location) -> bool:
    return (
        len(path) == len(parent_path) + 1
        and path.ids[:-1] == parent_path.ids
        and path.names[:-1] == parent_path.names
        and path.ids[-1] == node.id
        and path.names[-1] == node.name
    )


def rebuild_subtree_paths(
    subtree_root: Location, new_root_path: LocationPath, descendants: Iterable[Location]
) -> dict[uuid.UUID, LocationPath]:
    """Recompute materialized paths for a subtree after its root moved or was renamed.

    Args:
        subtree_root: The subtree root as currently stored (old path).
        new_root_path: The root's new materialized path.
        descendants: Every location below the root, as currently stored.

    Returns:
        New paths keyed by id, for the root and every descendant reachable
        from it. Each descendant keeps its own suffix below the root; its head
        is replaced by the root's new path. A descendant whose stored path
        does not carry the root's old path as prefix is recomputed from its
        already rebuilt parent instead.
    """

    old_prefix = subtree_root.path
    rebuilt: dict[uuid.UUID, LocationPath] = {subtree_root.id: new_root_path}

    children_by_parent: dict[uuid.UUID | None, list[Location]] = defaultdict(list)
    for loc in descendants:
        children_by_parent[loc.parent_id].append(loc)

    # Parents are always rebuilt before their children
    queue: deque[uuid.UUID] = deque([subtree_root.id])
    while queue:
        parent_id = queue.popleft()
        parent_path = rebuilt[parent_id]
        for child in children_by_parent.get(parent_id, ()):
            if child.id in rebuilt:
                continue
            new_path = replace_path_prefix(child.path, old_prefix, new_root_path)
            if new_path is None or not _consistent_with_parent(new_path, parent_path, child):
                new_path = compute_path(parent_path, child.id, child.name)
            rebuilt[child.id] = new_path
            queue.append(child.id)
    return rebuilt


def build_tree(locations: Iterable[Location]) -> list[LocationTreeNode]:
    """Nest a flat list of locations into a display tree.

    Siblings are ordered by name using ordinal (code point) comparison with the
    id as tie-break. Locations whose parent is not part of ``locations`` are
    treated as roots.
    """

    flat = list(locations)
    nodes = {loc.id: LocationTreeNode(id=loc.id, name=loc.name, depth=loc.depth) for loc in flat}
    roots: list[LocationTreeNode] = []
    for loc in flat:
        node = nodes[loc.id]
        parent = nodes.get(loc.parent_id) if loc.parent_id is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)

    stack: list[list[LocationTreeNode]] = [roots]
    while stack:
        siblings = stack.pop()
        siblings.sort(key=_tree_sort_key)
        stack.extend(node.children for node in siblings if node.children)
    return roots


def _tree_sort_key(node: LocationTreeNode) -> tuple[str, str]:
    return (node.name, str(node.id))


def find_invariant_violations(locations: Iterable[Location]) -> list[str]:
    """Audit a flat owner tree and describe every broken invariant.

    Checks path shape (matching id/name lengths, self at the tail), parent
    existence and ownership, path consistency with the parent, and that every
    parent chain reaches a root.
    """

    by_id = {loc.id: loc for loc in locations}
    issues: list[str] = []

    for loc in by_id.values():
        label = f"location {loc.id}"
        path = loc.path
        if len(path.ids) != len(path.names):
            issues.append(f"{label}: path_ids and path_names lengths differ")
            continue
        if len(path) == 0:
            issues.append(f"{label}: empty materialized path")
            continue
        if path.ids[-1] != loc.id or path.names[-1] != loc.name:
            issues.append(f"{label}: path does not end with the location itself")

        if loc.parent_id is None:
            if len(path) != 1:
                issues.append(f"{label}: root location with depth {path.depth}")
            continue

        parent = by_id.get(loc.parent_id)
        if parent is None:
            issues.append(f"{label}: parent {loc.parent_id} does not exist")
            continue
        if parent.owner_id != loc.owner_id:
            issues.append(f"{label}: parent {loc.parent_id} belongs to another owner")
        if path.ids[:-1] != parent.path.ids or path.names[:-1] != parent.path.names:
            issues.append(f"{label}: path is inconsistent with parent {parent.id}")

    issues.extend(_find_cycles(by_id))
    return issues


def _find_cycles(by_id: dict[uuid.UUID, Location]) -> list[str]:
    issues: list[str] = []
    reaches_root: set[uuid.UUID] = set()
    max_steps = len(by_id)
    for start in by_id.values():
        chain: list[uuid.UUID] = []
        cursor: Location | None = start
        steps = 0
        while cursor is not None and cursor.id not in reaches_root:
            if steps > max_steps:
                issues.append(f"location {start.id}: parent chain contains a cycle")
                chain = []
                break
            chain.append(cursor.id)
            steps += 1
            cursor = by_id.get(cursor.parent_id) if cursor.parent_id is not None else None
        reaches_root.update(chain)
    return issues
