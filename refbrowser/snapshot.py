"""Accessibility snapshot builder.

Turns the flat accessible-tree node list of a session into a ref-annotated
outline, one line per addressable node, depth-first pre-order::

    heading "Example Domain" [ref=e1]
    paragraph [ref=e2]
      text "This domain is for use in documentation examples..." [ref=e3]
    paragraph [ref=e4]
      link "Learn more" [ref=e5]

Purely presentational nodes (no role worth naming and no name) are skipped and
their children hoisted, so every ref points at something a text-only client
could plausibly act on. The same filtering is used when a ref is re-derived
against the live tree at action time (see ``refbrowser.resolver``).
"""

import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass

from refbrowser.registry import ReferenceRegistry
from refbrowser.views import AXNode, RefDescriptor, SnapshotOptions

logger = logging.getLogger(__name__)

ROOT_ROLES = {"RootWebArea", "WebArea"}
# Skipped unless they carry a name
PRESENTATIONAL_ROLES = {"", "none", "presentation", "generic", "InlineTextBox", "LineBreak"}
TEXT_ROLE = "StaticText"
MAX_NAME_LENGTH = 200

_REF_SUFFIX_RE = re.compile(r" \[ref=e\d+\]$")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class AddressableNode:
    """A node that earns an outline line (and a ref)."""

    node_id: str
    role: str
    name: str
    depth: int
    backend_node_id: int | None
    ancestor_role: str | None
    ancestor_name: str | None


def normalize_name(name: str) -> str:
    return _WS_RE.sub(" ", name).strip()


def collect_addressable(nodes: list[AXNode]) -> list[AddressableNode]:
    """Walk ``nodes`` depth-first pre-order and return the addressable ones in document order."""
    by_id = {n.node_id: n for n in nodes}
    roots = [n for n in nodes if n.parent_id is None or n.parent_id not in by_id]

    out: list[AddressableNode] = []
    seen: set[str] = set()
    # (node, emitted depth, nearest emitted ancestor name, nearest named ancestor (role, name))
    stack: list[tuple[AXNode, int, str, tuple[str, str] | None]] = [
        (root, 0, "", None) for root in reversed(roots)
    ]
    while stack:
        node, depth, parent_name, named = stack.pop()
        if node.node_id in seen:
            continue
        seen.add(node.node_id)

        role = node.role
        name = normalize_name(node.name)
        emit = False
        descend = True
        if role in ROOT_ROLES or node.ignored:
            pass
        elif role == TEXT_ROLE:
            descend = False
            if name and name != parent_name:
                role, emit = "text", True
        elif role in PRESENTATIONAL_ROLES:
            if name:
                role, emit = "generic", True
        else:
            emit = True

        child_depth, child_parent_name, child_named = depth, parent_name, named
        if emit:
            out.append(AddressableNode(
                node_id=node.node_id,
                role=role,
                name=name,
                depth=depth,
                backend_node_id=node.backend_node_id,
                ancestor_role=named[0] if named else None,
                ancestor_name=named[1] if named else None,
            ))
            child_depth, child_parent_name = depth + 1, name
            if name:
                child_named = (role, name)

        if descend:
            for child_id in reversed(node.child_ids):
                child = by_id.get(child_id)
                if child is not None:
                    stack.append((child, child_depth, child_parent_name, child_named))
    return out


def _escape(name: str) -> str:
    if len(name) > MAX_NAME_LENGTH:
        name = name[:MAX_NAME_LENGTH] + "..."
    return name.replace("\\", "\\\\").replace('"', '\\"')


def format_line(depth: int, role: str, name: str, ref: str) -> str:
    label = f'{role} "{_escape(name)}"' if name else role
    return f"{'  ' * depth}{label} [ref={ref}]"


def strip_ref(line: str) -> str:
    return _REF_SUFFIX_RE.sub("", line)


def _scope_key(item: AddressableNode) -> tuple:
    return (item.role, item.name, item.ancestor_role, item.ancestor_name)


@dataclass(frozen=True)
class Snapshot:
    """Immutable outline plus the registry it was derived from."""

    text: str
    registry: ReferenceRegistry
    incremental: str | None = None

    @property
    def refs(self) -> list[str]:
        return list(self.registry)

    def find_ref(self, role: str, name: str | None = None) -> str | None:
        """First ref whose node has ``role`` (and ``name`` when given)."""
        for ref, desc in self.registry.items():
            if desc.role == role and (name is None or desc.name == name):
                return ref
        return None

    def __str__(self) -> str:
        return self.text


def build_snapshot(
    nodes: list[AXNode],
    *,
    page_id: str,
    generation: int,
    navigation_epoch: int,
    options: SnapshotOptions | None = None,
    previous_text: str | None = None,
    first_ref: int = 1,
) -> Snapshot:
    """Render ``nodes`` into a Snapshot with a fresh registry.

    Refs are numbered upward from ``e<first_ref>``. The Page passes the next
    unused number so a token is never handed out twice between navigations.
    """
    options = options or SnapshotOptions()
    addressable = collect_addressable(nodes)

    # Position of each node among all nodes sharing its role and name. Counted
    # over the whole tree so a depth-limited snapshot re-derives the same way.
    totals = Counter((item.role, item.name) for item in addressable)
    scope_totals = Counter(_scope_key(item) for item in addressable)
    ordinals: dict[tuple, int] = defaultdict(int)
    scope_ordinals: dict[tuple, int] = defaultdict(int)

    entries: dict[str, RefDescriptor] = {}
    lines: list[str] = []
    for item in addressable:
        key = (item.role, item.name)
        scope_key = _scope_key(item)
        ordinal = ordinals[key]
        ordinals[key] += 1
        scope_ordinal = scope_ordinals[scope_key]
        scope_ordinals[scope_key] += 1
        if options.max_depth is not None and item.depth > options.max_depth:
            continue
        ref = f"e{first_ref + len(entries)}"
        entries[ref] = RefDescriptor(
            ref=ref,
            role=item.role,
            name=item.name,
            ordinal=ordinal,
            match_count=totals[key],
            scope_ordinal=scope_ordinal,
            scope_count=scope_totals[scope_key],
            ancestor_role=item.ancestor_role,
            ancestor_name=item.ancestor_name,
            depth=item.depth,
            backend_node_id=item.backend_node_id,
        )
        lines.append(format_line(item.depth, item.role, item.name, ref))

    text = "\n".join(lines)
    incremental = None
    if options.track is not None:
        if previous_text is None:
            incremental = text
        else:
            before = {strip_ref(line) for line in previous_text.splitlines()}
            incremental = "\n".join(line for line in lines if strip_ref(line) not in before)

    registry = ReferenceRegistry(page_id, generation, navigation_epoch, entries)
    logger.info(f"[Snapshot] gen={generation}: {len(nodes)} AX nodes → {len(entries)} refs")
    return Snapshot(text=text, registry=registry, incremental=incremental)
