"""Data models shared across the snapshot, resolution and facade layers."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

LoadState = Literal["domcontentloaded", "load", "networkidle"]

# Ordered readiness: reaching a later state implies the earlier ones.
LOAD_STATE_ORDER: dict[str, int] = {"domcontentloaded": 1, "load": 2, "networkidle": 3}

ActionKind = Literal[
    "click",
    "dblclick",
    "hover",
    "fill",
    "type",
    "press",
    "check",
    "uncheck",
    "select_option",
    "set_input_files",
    "text_content",
    "inner_text",
    "get_attribute",
    "input_value",
    "is_visible",
    "scroll_into_view",
]


def _parse_props(properties: list) -> dict:
    """Flatten AX node properties list into a simple dict."""
    out = {}
    for p in properties:
        val = p.get("value", {})
        out[p["name"]] = val.get("value")
    return out


class AXNode(BaseModel):
    """One node of the accessible tree, normalized from the CDP wire shape."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    parent_id: str | None = None
    child_ids: tuple[str, ...] = ()
    role: str = ""
    name: str = ""
    value: str = ""
    ignored: bool = False
    backend_node_id: int | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_cdp(cls, node: dict) -> "AXNode":
        return cls(
            node_id=str(node["nodeId"]),
            parent_id=str(node["parentId"]) if node.get("parentId") is not None else None,
            child_ids=tuple(str(c) for c in node.get("childIds", [])),
            role=str(node.get("role", {}).get("value") or ""),
            name=str(node.get("name", {}).get("value") or "").strip(),
            value=str(node.get("value", {}).get("value") or ""),
            ignored=bool(node.get("ignored", False)),
            backend_node_id=node.get("backendDOMNodeId"),
            properties=_parse_props(node.get("properties", [])),
        )


class RefDescriptor(BaseModel):
    """Enough about a snapshot node to find it again later.

    ``ordinal``/``match_count`` place the node among all nodes sharing its
    role and name in document order at snapshot time. ``scope_ordinal``/
    ``scope_count`` do the same among those that also share its nearest named
    ancestor.
    """

    model_config = ConfigDict(frozen=True)

    ref: str
    role: str
    name: str = ""
    ordinal: int = 0
    match_count: int = 1
    scope_ordinal: int = 0
    scope_count: int = 1
    ancestor_role: str | None = None
    ancestor_name: str | None = None
    depth: int = 0
    backend_node_id: int | None = None


class ResolvedTarget(BaseModel):
    """A concrete action target, valid only for the action being dispatched."""

    model_config = ConfigDict(frozen=True)

    backend_node_id: int
    selector: str
    resolved_selector: str
    role: str | None = None
    name: str | None = None


class SnapshotOptions(BaseModel):
    track: str | None = None
    max_depth: int | None = Field(default=None, ge=0)


class ClientInfo(BaseModel):
    """Who is driving the session. Used for logging only."""

    name: str = "refbrowser"
    version: str | None = None


class ContextOptions(BaseModel):
    """Per-context overrides applied on top of :class:`RefBrowserConfig`."""

    model_config = ConfigDict(extra="forbid")

    allowed_protocols: list[str] | None = None
    allowed_directories: list[str] | None = None
    navigation_timeout: float | None = Field(default=None, ge=0)
    action_timeout: float | None = Field(default=None, ge=0)
    downloads_path: str | None = None

    @field_validator("allowed_protocols")
    @classmethod
    def _protocols_are_names(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        for proto in v:
            if not proto or not proto.rstrip(":").replace("+", "").replace("-", "").replace(".", "").isalnum():
                raise ValueError(f"Invalid protocol: {proto!r}")
        return v
