"""Selector parsing and lazy resolution to live action targets.

Resolution happens at action time, never at snapshot time. A ref is looked up
in the registry it was issued from and then re-derived against a fresh
accessible tree from the stored role/name/position descriptor, so it survives
the session swapping out node identities under an unchanged DOM. Descriptive
selectors (role, text, CSS) skip the registry and resolve against the current
DOM directly.

Resolution never substitutes a "close enough" element: when the descriptor
cannot pick exactly one live node it fails.
"""

import json
import logging
import re
from dataclasses import dataclass

from refbrowser.exceptions import (
    AmbiguousReferenceError,
    ElementNotFoundError,
    StaleReferenceError,
)
from refbrowser.registry import ReferenceRegistry
from refbrowser.session import SessionBackend
from refbrowser.snapshot import AddressableNode, collect_addressable, normalize_name
from refbrowser.views import RefDescriptor, ResolvedTarget

logger = logging.getLogger(__name__)

_ARIA_REF_RE = re.compile(r"^(?:aria-ref=)?(e\d+)$")
_ROLE_RE = re.compile(r'^role=([A-Za-z]+)(?:\[name=(?:"((?:[^"\\]|\\.)*)"|\'((?:[^\'\\]|\\.)*)\')(s|i)?\])?$')
_TEXT_RE = re.compile(r'^text=(?:"((?:[^"\\]|\\.)*)"|(.+))$', re.DOTALL)


@dataclass(frozen=True)
class ParsedSelector:
    kind: str  # "ref", "role", "text", "css"
    source: str
    ref: str | None = None
    role: str | None = None
    name: str | None = None
    exact: bool = False
    css: str | None = None

    @property
    def is_ref(self) -> bool:
        return self.kind == "ref"


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def parse_selector(selector: str) -> ParsedSelector:
    """Classify a selector string.

    Accepted forms: ``aria-ref=e6`` / ``e6``, ``role=link[name="Learn more"]``
    (case-insensitive substring; add ``s`` after the quote for exact),
    ``text=Learn`` (substring) / ``text="Learn more"`` (exact), ``css=a.b`` and
    any other string as a raw CSS selector.
    """
    source = selector
    selector = selector.strip()
    if not selector:
        raise ValueError("Empty selector")

    m = _ARIA_REF_RE.match(selector)
    if m:
        return ParsedSelector(kind="ref", source=source, ref=m.group(1))

    m = _ROLE_RE.match(selector)
    if m:
        raw = m.group(2) if m.group(2) is not None else m.group(3)
        return ParsedSelector(
            kind="role",
            source=source,
            role=m.group(1),
            name=_unescape(raw) if raw is not None else None,
            exact=m.group(4) == "s",
        )

    m = _TEXT_RE.match(selector)
    if m:
        if m.group(1) is not None:
            return ParsedSelector(kind="text", source=source, name=_unescape(m.group(1)), exact=True)
        return ParsedSelector(kind="text", source=source, name=m.group(2).strip())

    if selector.startswith("css="):
        selector = selector[len("css="):]
    return ParsedSelector(kind="css", source=source, css=selector)


def describe_role(role: str, name: str | None, nth: int | None = None) -> str:
    out = f"get_by_role({json.dumps(role)}"
    if name:
        out += f", name={json.dumps(name)}"
    out += ")"
    if nth is not None:
        out += f".nth({nth})"
    return out


def _name_matches(candidate: str, wanted: str, exact: bool) -> bool:
    if exact:
        return candidate == wanted
    return normalize_name(wanted).lower() in candidate.lower()


def _in_scope(node: AddressableNode, desc: RefDescriptor) -> bool:
    return node.ancestor_role == desc.ancestor_role and node.ancestor_name == desc.ancestor_name


def rederive(desc: RefDescriptor, live: list[AddressableNode]) -> list[AddressableNode]:
    """Find the live node(s) a descriptor points at.

    Returns one node on a confident match, several when ambiguous, none when
    the node is gone or can no longer be told apart from a look-alike.

    Without a backend id hit, a node is only picked by position: its ordinal
    among same role+name nodes when that set still has its snapshot-time size,
    else its ordinal among those under the same named ancestor when that
    smaller set still has its snapshot-time size. If both sets changed size a
    lone survivor may be a sibling of the removed node, so it is not returned.
    """
    if desc.backend_node_id is not None:
        for node in live:
            if node.backend_node_id == desc.backend_node_id and node.role == desc.role and node.name == desc.name:
                return [node]

    same = [n for n in live if n.role == desc.role and n.name == desc.name]
    if len(same) == desc.match_count and _in_scope(same[desc.ordinal], desc):
        return [same[desc.ordinal]]

    scoped = [n for n in same if _in_scope(n, desc)]
    if len(scoped) == desc.scope_count:
        return [scoped[desc.scope_ordinal]]
    if len(scoped) > 1:
        return scoped
    return []


class SelectorResolver:
    """Turns parsed selectors into :class:`ResolvedTarget` against one session."""

    def __init__(self, backend: SessionBackend):
        self._backend = backend

    async def resolve_ref(
        self,
        ref: str,
        *,
        registry: ReferenceRegistry | None,
        current: ReferenceRegistry | None,
        navigation_epoch: int,
        selector: str,
        url: str,
    ) -> ResolvedTarget:
        """Resolve ``ref`` issued by ``registry`` given the Page's ``current`` registry.

        ``registry`` is the one the caller's locator was bound to (or ``None``
        to use the current one).
        """
        registry = registry if registry is not None else current
        if registry is None:
            raise StaleReferenceError(f"Ref {ref} used before any snapshot was taken", selector=selector, url=url)
        if registry.navigation_epoch != navigation_epoch:
            raise StaleReferenceError(
                f"Ref {ref} is from a snapshot taken before the page navigated; take a new snapshot",
                selector=selector,
                url=url,
            )
        superseded = registry is not current
        desc = registry.get(ref)
        if desc is None:
            if superseded:
                raise StaleReferenceError(f"Ref {ref} is not in its snapshot", selector=selector, url=url)
            raise ElementNotFoundError(f"Ref {ref} is not in the current snapshot", selector=selector, url=url)

        live = collect_addressable(await self._backend.query_accessible_tree())
        matches = rederive(desc, live)
        logger.debug(
            f"[Resolve] {ref} gen={registry.generation} superseded={superseded} "
            f"{desc.role} {desc.name!r} → {len(matches)} match(es)"
        )
        if not matches:
            if superseded:
                raise StaleReferenceError(
                    f"Ref {ref} ({desc.role} {desc.name!r}) is from a superseded snapshot and no longer matches the page",
                    selector=selector,
                    url=url,
                )
            raise ElementNotFoundError(
                f"Ref {ref} ({desc.role} {desc.name!r}) is no longer on the page",
                selector=selector,
                url=url,
            )
        if len(matches) > 1:
            raise AmbiguousReferenceError(
                f"Ref {ref} ({desc.role} {desc.name!r}) matches {len(matches)} elements",
                selector=selector,
                url=url,
            )
        node = matches[0]
        if node.backend_node_id is None:
            raise ElementNotFoundError(f"Ref {ref} has no DOM node", selector=selector, url=url)
        nth = desc.ordinal if desc.match_count > 1 else None
        return ResolvedTarget(
            backend_node_id=node.backend_node_id,
            selector=selector,
            resolved_selector=describe_role(desc.role, desc.name, nth),
            role=node.role,
            name=node.name,
        )

    async def resolve_all(self, parsed: ParsedSelector) -> list[ResolvedTarget]:
        """All live matches of a descriptive selector, in document order."""
        if parsed.is_ref:
            raise ValueError("resolve_all() takes descriptive selectors; use resolve_ref() for refs")

        if parsed.kind == "css":
            backend_ids = await self._backend.query_selector_all(parsed.css)
            return [
                ResolvedTarget(
                    backend_node_id=bid,
                    selector=parsed.source,
                    resolved_selector=f"locator({json.dumps(parsed.css)}).nth({i})",
                )
                for i, bid in enumerate(backend_ids)
            ]

        live = collect_addressable(await self._backend.query_accessible_tree())
        if parsed.kind == "role":
            matches = [
                n for n in live
                if n.role == parsed.role and (parsed.name is None or _name_matches(n.name, parsed.name, parsed.exact))
            ]
        else:
            matches = [n for n in live if n.name and _name_matches(n.name, parsed.name, parsed.exact)]

        out = []
        for i, node in enumerate(matches):
            if node.backend_node_id is None:
                continue
            if parsed.kind == "role":
                readable = describe_role(node.role, parsed.name, i if len(matches) > 1 else None)
            else:
                readable = f"get_by_text({json.dumps(parsed.name)}{', exact=True' if parsed.exact else ''}).nth({i})"
            out.append(ResolvedTarget(
                backend_node_id=node.backend_node_id,
                selector=parsed.source,
                resolved_selector=readable,
                role=node.role,
                name=node.name,
            ))
        return out
