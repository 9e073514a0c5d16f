"""Session backends: the narrow interface the page facade drives, and its CDP implementation.

The facade never manages the browser process. It only calls through a
``SessionBackend``; anything that satisfies the protocol (a CDP target, a test
double) can sit underneath a Page.
"""

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable

import aiohttp

from refbrowser.cdp import CDPConnection, get_ws_url
from refbrowser.exceptions import ScriptEvaluationError, SessionBackendError
from refbrowser.views import LOAD_STATE_ORDER, AXNode, ActionKind, LoadState

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionBackend(Protocol):
    # Bumped on every main-frame (cross-document) navigation, whoever started it.
    navigation_count: int

    async def navigate(self, url: str, wait_until: LoadState = "load") -> None: ...

    async def evaluate(self, script: str) -> Any: ...

    async def query_accessible_tree(self) -> list[AXNode]: ...

    async def query_selector_all(self, selector: str) -> list[int]: ...

    async def dispatch_action(self, target: int | None, kind: ActionKind, payload: dict | None = None) -> dict: ...

    async def current_url(self) -> str: ...

    async def current_title(self) -> str: ...

    async def wait_for_load_signal(self, state: LoadState) -> None: ...

    async def ready_state(self) -> LoadState | None: ...

    async def history(self, delta: int, wait_until: LoadState = "load") -> bool: ...

    async def reload(self, wait_until: LoadState = "load") -> None: ...

    async def set_download_directory(self, path: str) -> None: ...

    async def close(self) -> None: ...


# Key name → (code, windowsVirtualKeyCode, text)
_KEYS: dict[str, tuple[str, int, str]] = {
    "Enter": ("Enter", 13, "\r"),
    "Tab": ("Tab", 9, ""),
    "Escape": ("Escape", 27, ""),
    "Backspace": ("Backspace", 8, ""),
    "Delete": ("Delete", 46, ""),
    "ArrowUp": ("ArrowUp", 38, ""),
    "ArrowDown": ("ArrowDown", 40, ""),
    "ArrowLeft": ("ArrowLeft", 37, ""),
    "ArrowRight": ("ArrowRight", 39, ""),
    "Home": ("Home", 36, ""),
    "End": ("End", 35, ""),
    "PageUp": ("PageUp", 33, ""),
    "PageDown": ("PageDown", 34, ""),
    "Space": ("Space", 32, " "),
}

_CDP_LIFECYCLE = {"DOMContentLoaded": "domcontentloaded", "load": "load", "networkIdle": "networkidle"}

# Actions after which the page may have navigated away.
_NAVIGATING_KINDS = {"click", "dblclick", "press"}

# Focus the real input (handles role="combobox" wrappers around an inner
# <input>) and select its contents so insertText replaces them.
_FOCUS_AND_SELECT_JS = """function() {
    var el = (this.tagName === 'INPUT' || this.tagName === 'TEXTAREA')
        ? this
        : (this.querySelector('input:not([type=hidden]),textarea') || this);
    el.focus();
    try { el.setSelectionRange(0, (el.value || '').length + 9999); }
    catch(e) {
        try {
            var r = document.createRange();
            r.selectNodeContents(el);
            var s = window.getSelection();
            s.removeAllRanges();
            s.addRange(r);
        } catch(e2) {}
    }
}"""

_FIRE_INPUT_EVENTS_JS = """function(clear) {
    var el = (this.tagName === 'INPUT' || this.tagName === 'TEXTAREA')
        ? this
        : (this.querySelector('input:not([type=hidden]),textarea') || this);
    if (clear) { if ('value' in el) { el.value = ''; } else { el.textContent = ''; } }
    el.dispatchEvent(new Event('input', {bubbles: true}));
    el.dispatchEvent(new Event('change', {bubbles: true}));
}"""

_READ_JS: dict[str, str] = {
    "text_content": "function(){ return this.textContent; }",
    "inner_text": "function(){ return this.innerText !== undefined ? this.innerText : this.textContent; }",
    "input_value": "function(){ return this.value === undefined ? null : String(this.value); }",
    "get_attribute": "function(name){ return this.getAttribute(name); }",
    "is_visible": (
        "function(){"
        "const r=this.getBoundingClientRect();"
        "const s=window.getComputedStyle(this);"
        "return r.width>0 && r.height>0 && s.visibility!=='hidden' && s.display!=='none';}"
    ),
}


class CDPSessionBackend:
    """Single persistent WebSocket connection to one CDP page target.

    Tracks the target's lifecycle events so load-state waits can be answered
    without polling. Element addressing is by backend DOM node id, the id the
    accessibility tree reports for each node.
    """

    def __init__(self, connection: CDPConnection, settle_delay: float = 0.5):
        self._cdp = connection
        self.settle_delay = settle_delay
        self._signals: dict[str, asyncio.Event] = {s: asyncio.Event() for s in LOAD_STATE_ORDER}
        self._main_frame_id: str | None = None
        self.navigation_count = 0

    @classmethod
    async def connect(cls, cdp_url: str, target_id: str | None = None, **kwargs) -> "CDPSessionBackend":
        ws_url = await get_ws_url(cdp_url, target_id)
        connection = CDPConnection(ws_url)
        await connection.connect()
        backend = cls(connection, **kwargs)
        try:
            await backend.start()
        except Exception:
            await connection.close()
            raise
        return backend

    async def start(self):
        self._cdp.on("Page.lifecycleEvent", self._on_lifecycle)
        self._cdp.on("Page.domContentEventFired", lambda _: self._mark("domcontentloaded"))
        self._cdp.on("Page.loadEventFired", lambda _: self._mark("load"))
        self._cdp.on("Page.frameNavigated", self._on_frame_navigated)
        for domain in ("Page", "Runtime", "DOM", "Accessibility"):
            await self._cdp.send(f"{domain}.enable")
        await self._cdp.send("Page.setLifecycleEventsEnabled", {"enabled": True})
        tree = await self._cdp.send("Page.getFrameTree")
        self._main_frame_id = tree.get("frameTree", {}).get("frame", {}).get("id")
        # Seed from the document that is already loaded.
        state = await self.ready_state()
        if state:
            self._mark(state)

    # ── Lifecycle tracking ─────────────────────────────────────────────────

    def _reset_signals(self):
        for event in self._signals.values():
            event.clear()

    def _mark(self, state: str):
        # Reaching a state implies every earlier one.
        rank = LOAD_STATE_ORDER[state]
        for name, event in self._signals.items():
            if LOAD_STATE_ORDER[name] <= rank:
                event.set()

    def _on_lifecycle(self, params: dict):
        if self._main_frame_id and params.get("frameId") not in (None, self._main_frame_id):
            return
        if params.get("name") == "init":
            self._reset_signals()
            return
        state = _CDP_LIFECYCLE.get(params.get("name", ""))
        if state:
            self._mark(state)

    def _on_frame_navigated(self, params: dict):
        frame = params.get("frame", {})
        if frame.get("parentId") is None:
            self._main_frame_id = frame.get("id", self._main_frame_id)
            self.navigation_count += 1
            logger.debug(f"[CDP] Main frame navigated to {frame.get('url')}")

    async def wait_for_load_signal(self, state: LoadState) -> None:
        await self._signals[state].wait()

    async def ready_state(self) -> LoadState | None:
        result = await self._cdp.send("Runtime.evaluate", {
            "expression": "document.readyState",
            "returnByValue": True,
        })
        value = result.get("result", {}).get("value")
        if value == "complete":
            return "networkidle" if self._signals["networkidle"].is_set() else "load"
        if value == "interactive":
            return "domcontentloaded"
        return None

    # ── Navigation ─────────────────────────────────────────────────────────

    async def navigate(self, url: str, wait_until: LoadState = "load") -> None:
        self._reset_signals()
        result = await self._cdp.send("Page.navigate", {"url": url})
        if result.get("errorText"):
            raise SessionBackendError(f"Navigation to {url} failed: {result['errorText']}")
        if not result.get("loaderId"):
            # Same-document navigation: no new load events will fire.
            self._mark("load")
            return
        await self.wait_for_load_signal(wait_until)

    async def history(self, delta: int, wait_until: LoadState = "load") -> bool:
        hist = await self._cdp.send("Page.getNavigationHistory")
        index = hist.get("currentIndex", 0) + delta
        entries = hist.get("entries", [])
        if index < 0 or index >= len(entries):
            return False
        self._reset_signals()
        await self._cdp.send("Page.navigateToHistoryEntry", {"entryId": entries[index]["id"]})
        await self.wait_for_load_signal(wait_until)
        return True

    async def reload(self, wait_until: LoadState = "load") -> None:
        self._reset_signals()
        await self._cdp.send("Page.reload")
        await self.wait_for_load_signal(wait_until)

    async def current_url(self) -> str:
        return await self._evaluate_value("window.location.href") or ""

    async def current_title(self) -> str:
        return await self._evaluate_value("document.title") or ""

    # ── Evaluation / query ─────────────────────────────────────────────────

    async def _evaluate_value(self, expression: str) -> Any:
        result = await self._cdp.send("Runtime.evaluate", {
            "expression": expression,
            "returnByValue": True,
        })
        return result.get("result", {}).get("value")

    async def evaluate(self, script: str) -> Any:
        result = await self._cdp.send("Runtime.evaluate", {
            "expression": script,
            "returnByValue": True,
            "awaitPromise": True,
        })
        details = result.get("exceptionDetails")
        if details:
            exc = details.get("exception", {})
            raise ScriptEvaluationError(exc.get("description") or details.get("text") or "Script threw")
        return result.get("result", {}).get("value")

    async def query_accessible_tree(self) -> list[AXNode]:
        result = await self._cdp.send("Accessibility.getFullAXTree", None, timeout=15.0)
        nodes = [AXNode.from_cdp(n) for n in result.get("nodes", [])]
        logger.debug(f"[CDP] AX tree: {len(nodes)} nodes")
        return nodes

    async def query_selector_all(self, selector: str) -> list[int]:
        doc = await self._cdp.send("DOM.getDocument", {"depth": 0})
        found = await self._cdp.send("DOM.querySelectorAll", {
            "nodeId": doc["root"]["nodeId"],
            "selector": selector,
        })
        backend_ids = []
        for node_id in found.get("nodeIds", []):
            desc = await self._cdp.send("DOM.describeNode", {"nodeId": node_id})
            backend_ids.append(desc["node"]["backendNodeId"])
        return backend_ids

    # ── Actions ────────────────────────────────────────────────────────────

    async def _resolve_object(self, backend_node_id: int) -> str:
        result = await self._cdp.send("DOM.resolveNode", {"backendNodeId": backend_node_id})
        return result["object"]["objectId"]

    async def _call_on(self, object_id: str, declaration: str, *args: Any) -> Any:
        params: dict = {
            "objectId": object_id,
            "functionDeclaration": declaration,
            "returnByValue": True,
        }
        if args:
            params["arguments"] = [{"value": a} for a in args]
        result = await self._cdp.send("Runtime.callFunctionOn", params)
        return result.get("result", {}).get("value")

    async def _element_center(self, backend_node_id: int) -> tuple[float, float]:
        """Get viewport center of element, scrolling it into view first."""
        obj_id = await self._resolve_object(backend_node_id)
        await self._call_on(obj_id, "function(){this.scrollIntoView({block:'center',behavior:'instant'});}")
        try:
            bm = await self._cdp.send("DOM.getBoxModel", {"backendNodeId": backend_node_id})
            quads = bm["model"]["border"]  # [x1,y1, x2,y2, x3,y3, x4,y4]
            xs, ys = quads[0::2], quads[1::2]
            cx, cy = sum(xs) / 4, sum(ys) / 4
            if cx > 0 and cy > 0:
                return cx, cy
        except SessionBackendError as e:
            logger.debug(f"[CDP] getBoxModel failed for node {backend_node_id}: {e}")
        pos = await self._call_on(
            obj_id,
            "function(){const r=this.getBoundingClientRect();return {x:r.left+r.width/2,y:r.top+r.height/2};}",
        ) or {}
        return float(pos.get("x", 0)), float(pos.get("y", 0))

    async def _mouse(self, x: float, y: float, click_count: int):
        await self._cdp.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y})
        for count in range(1, click_count + 1):
            for etype in ("mousePressed", "mouseReleased"):
                await self._cdp.send("Input.dispatchMouseEvent", {
                    "type": etype, "x": x, "y": y,
                    "button": "left", "clickCount": count,
                })

    async def _key(self, key: str):
        if key in _KEYS:
            code, vk, text = _KEYS[key]
        elif len(key) == 1:
            code, vk, text = key, ord(key.upper()), key
        else:
            code, vk, text = key, 0, ""
        down: dict = {"type": "keyDown", "key": key, "code": code, "windowsVirtualKeyCode": vk}
        if text:
            down["text"] = text
        await self._cdp.send("Input.dispatchKeyEvent", down)
        await self._cdp.send("Input.dispatchKeyEvent", {
            "type": "keyUp", "key": key, "code": code, "windowsVirtualKeyCode": vk,
        })

    async def _type_chars(self, text: str):
        for char in text:
            await self._cdp.send("Input.dispatchKeyEvent", {"type": "keyDown", "text": char, "key": char})
            await self._cdp.send("Input.dispatchKeyEvent", {"type": "keyUp", "key": char})

    async def _focus(self, backend_node_id: int):
        await self._cdp.send("DOM.focus", {"backendNodeId": backend_node_id})

    async def _wait_document(self):
        for _ in range(30):
            state = await self._evaluate_value("document.readyState")
            if state in ("complete", "interactive"):
                self._mark("load" if state == "complete" else "domcontentloaded")
                return
            await asyncio.sleep(0.2)

    async def dispatch_action(self, target: int | None, kind: ActionKind, payload: dict | None = None) -> dict:
        payload = payload or {}
        if target is None and kind not in ("type", "press"):
            raise SessionBackendError(f"{kind} needs a target element")
        pre_url = await self.current_url() if kind in _NAVIGATING_KINDS else None
        value: Any = None

        if kind in ("click", "dblclick", "hover"):
            x, y = await self._element_center(target)
            if kind == "hover":
                await self._cdp.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y})
            else:
                await self._mouse(x, y, 2 if kind == "dblclick" else 1)
        elif kind == "fill":
            text = str(payload.get("value", ""))
            obj_id = await self._resolve_object(target)
            await self._call_on(obj_id, _FOCUS_AND_SELECT_JS)
            if text:
                await self._cdp.send("Input.insertText", {"text": text})
            # Fire input/change so React/Vue/Angular pick up the new value
            await self._call_on(obj_id, _FIRE_INPUT_EVENTS_JS, not text)
        elif kind == "type":
            if target is not None:
                await self._focus(target)
            await self._type_chars(str(payload.get("text", "")))
        elif kind == "press":
            if target is not None:
                await self._focus(target)
            await self._key(str(payload["key"]))
        elif kind in ("check", "uncheck"):
            obj_id = await self._resolve_object(target)
            await self._call_on(
                obj_id,
                "function(want){ if (!!this.checked !== want) { this.click(); } return !!this.checked; }",
                kind == "check",
            )
        elif kind == "select_option":
            obj_id = await self._resolve_object(target)
            value = await self._call_on(
                obj_id,
                """function(values) {
                    var picked = [];
                    for (var o of this.options) {
                        o.selected = values.indexOf(o.value) >= 0 || values.indexOf(o.label) >= 0;
                        if (o.selected) picked.push(o.value);
                    }
                    this.dispatchEvent(new Event('input', {bubbles: true}));
                    this.dispatchEvent(new Event('change', {bubbles: true}));
                    return picked;
                }""",
                list(payload.get("values", [])),
            )
        elif kind == "set_input_files":
            await self._cdp.send("DOM.setFileInputFiles", {
                "files": list(payload.get("files", [])),
                "backendNodeId": target,
            })
        elif kind == "scroll_into_view":
            obj_id = await self._resolve_object(target)
            await self._call_on(obj_id, "function(){this.scrollIntoView({block:'center',behavior:'instant'});}")
        elif kind in _READ_JS:
            obj_id = await self._resolve_object(target)
            if kind == "get_attribute":
                value = await self._call_on(obj_id, _READ_JS[kind], payload["name"])
            else:
                value = await self._call_on(obj_id, _READ_JS[kind])
        else:
            raise SessionBackendError(f"Unsupported action: {kind}")

        navigated = False
        url = pre_url
        if pre_url is not None:
            await asyncio.sleep(self.settle_delay)
            url = await self.current_url()
            if url and url != pre_url:
                logger.info(f"[CDP] Navigation detected: {pre_url} → {url}")
                navigated = True
                await self._wait_document()
        return {"value": value, "navigated": navigated, "url": url}

    async def set_download_directory(self, path: str) -> None:
        await self._cdp.send("Page.setDownloadBehavior", {"behavior": "allow", "downloadPath": path})

    async def close(self) -> None:
        try:
            await self._cdp.close()
        except aiohttp.ClientError as e:
            raise SessionBackendError(f"Error closing {self._cdp.ws_url}: {e}") from e

    def __repr__(self) -> str:
        return f"CDPSessionBackend({json.dumps(self._cdp.ws_url)})"
