"""Page facade: one browsing surface bound to one session.

State machine::

    idle ──goto/go_back/go_forward/reload──▶ navigating ──settled/timeout──▶ idle

Every navigation moves the page to a new navigation epoch: goto and history
moves, one detected after a click, and one the session reports on its own (a
script or redirect changing the main frame). Refs from earlier epochs can
never resolve again. Within one epoch ref numbers keep counting up across
snapshots, so a token names one node until the next navigation.
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from uuid_extensions import uuid7str

from refbrowser.config import DEFAULT_TIMEOUT_MS
from refbrowser.exceptions import (
    ActionTimeoutError,
    NavigationTimeoutError,
    ScriptEvaluationError,
    SessionBackendError,
    TargetClosedError,
)
from refbrowser.locator import Keyboard, Locator
from refbrowser.registry import ReferenceRegistry
from refbrowser.resolver import SelectorResolver
from refbrowser.session import SessionBackend
from refbrowser.snapshot import Snapshot, build_snapshot
from refbrowser.views import LOAD_STATE_ORDER, LoadState, SnapshotOptions

if TYPE_CHECKING:
    from refbrowser.context import BrowserContext, SecurityPolicy

logger = logging.getLogger(__name__)

PAGE_EVENTS = frozenset({"close", "framenavigated", "load", "domcontentloaded", "snapshot"})

Handler = Callable[..., Any]


class PageState(enum.Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"


def _seconds(ms: float) -> float | None:
    # 0 disables the timeout
    return None if ms == 0 else ms / 1000


def _check_timeout(ms: float) -> float:
    if ms < 0:
        raise ValueError(f"Timeout must be >= 0 ms, got {ms}")
    return float(ms)


class Page:
    def __init__(
        self,
        backend: SessionBackend,
        context: "BrowserContext | None" = None,
        *,
        navigation_timeout: float = DEFAULT_TIMEOUT_MS,
        action_timeout: float = DEFAULT_TIMEOUT_MS,
        wait_until: LoadState = "load",
    ):
        self.id = uuid7str()
        self._backend = backend
        self._context = context
        self._resolver = SelectorResolver(backend)
        self._navigation_timeout = _check_timeout(navigation_timeout)
        self._action_timeout = _check_timeout(action_timeout)
        self._wait_until: LoadState = wait_until
        self._state = PageState.IDLE
        self._closed = False

        self._registry: ReferenceRegistry | None = None
        self._generation = 0
        self._navigation_epoch = 0
        self._tracked: dict[str, str] = {}
        # refs handed out in this epoch, mapped to the registry that issued them
        self._issued: dict[str, ReferenceRegistry] = {}
        self._next_ref = 1
        self._seen_navigations = backend.navigation_count

        self._listeners: dict[str, list[tuple[Handler, bool]]] = {}
        self.keyboard = Keyboard(self)

    # ── Properties ─────────────────────────────────────────────────────────

    @property
    def context(self) -> "BrowserContext | None":
        return self._context

    @property
    def state(self) -> PageState:
        return self._state

    @property
    def navigation_timeout(self) -> float:
        return self._navigation_timeout

    @property
    def action_timeout(self) -> float:
        return self._action_timeout

    @property
    def ref_map(self) -> ReferenceRegistry | None:
        """Registry of the latest snapshot, or None before the first one / after navigation."""
        return self._registry

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self._navigation_timeout = _check_timeout(timeout)

    def set_default_timeout(self, timeout: float) -> None:
        self._action_timeout = _check_timeout(timeout)

    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise TargetClosedError(f"Page {self.id} is closed")

    def _security_policy(self) -> "SecurityPolicy":
        if self._context is None:
            # Standalone pages (tests, embedding) get the default-deny policy.
            from refbrowser.context import SecurityPolicy
            return SecurityPolicy()
        return self._context.security_policy

    async def _url_for_errors(self) -> str | None:
        """Current URL for error messages; None if the session can't say."""
        if self._closed:
            return None
        try:
            return await self._backend.current_url()
        except SessionBackendError as e:
            logger.debug(f"[Page] Could not read URL for error context: {e}")
            return None

    # ── Events ─────────────────────────────────────────────────────────────

    def on(self, event: str, handler: Handler) -> "Page":
        if event not in PAGE_EVENTS:
            raise ValueError(f"Unknown page event {event!r}; expected one of {sorted(PAGE_EVENTS)}")
        self._listeners.setdefault(event, []).append((handler, False))
        return self

    def once(self, event: str, handler: Handler) -> "Page":
        self.on(event, handler)
        self._listeners[event][-1] = (handler, True)
        return self

    def remove_listener(self, event: str, handler: Handler) -> "Page":
        self._listeners[event] = [(h, once) for h, once in self._listeners.get(event, []) if h != handler]
        return self

    off = remove_listener

    def _emit(self, event: str, *args: Any) -> None:
        handlers = self._listeners.get(event, [])
        if any(once for _, once in handlers):
            self._listeners[event] = [(h, once) for h, once in handlers if not once]
        for handler, _ in handlers:
            if event == "close":
                try:
                    handler(*args)
                except Exception as e:
                    logger.warning(f"[Page] close handler {handler!r} raised: {e}")
            else:
                handler(*args)

    # ── Navigation ─────────────────────────────────────────────────────────

    def _invalidate_refs(self):
        self._navigation_epoch += 1
        self._registry = None
        self._issued = {}
        self._next_ref = 1
        self._seen_navigations = self._backend.navigation_count

    async def _sync_navigation(self) -> None:
        """Start a new epoch if the main frame navigated without the Page driving it."""
        if self._backend.navigation_count == self._seen_navigations:
            return
        url = await self._url_for_errors()
        logger.info(f"[Page] Session navigated on its own to {url}; dropping refs")
        self._invalidate_refs()
        self._on_navigated(url, None)

    def _registry_for(self, ref: str) -> ReferenceRegistry | None:
        """Registry that issued ``ref`` in this epoch, else the current one."""
        return self._issued.get(ref, self._registry)

    def _on_navigated(self, url: str | None, reached: LoadState | None):
        logger.info(f"[Page] Navigated → {url}")
        self._emit("framenavigated", self)
        if reached is not None:
            for state in ("domcontentloaded", "load"):
                if LOAD_STATE_ORDER[state] <= LOAD_STATE_ORDER[reached]:
                    self._emit(state, self)

    async def _navigate(self, operation: Awaitable, target: str, wait_until: LoadState, timeout: float | None):
        timeout_ms = self._navigation_timeout if timeout is None else _check_timeout(timeout)
        self._state = PageState.NAVIGATING
        try:
            result = await asyncio.wait_for(operation, timeout=_seconds(timeout_ms))
        except asyncio.TimeoutError:
            self._invalidate_refs()
            raise NavigationTimeoutError(
                f"Navigation to {target} did not reach {wait_until!r} within {timeout_ms:.0f}ms",
                url=target,
            ) from None
        except Exception:
            self._invalidate_refs()
            raise
        finally:
            self._state = PageState.IDLE
        if result is False:
            return False
        self._invalidate_refs()
        self._on_navigated(await self._url_for_errors(), wait_until)
        return result

    async def goto(self, url: str, *, wait_until: LoadState | None = None, timeout: float | None = None) -> None:
        self._ensure_open()
        self._security_policy().check_url(url)
        wait_until = wait_until or self._wait_until
        logger.info(f"[Page] goto {url} (wait_until={wait_until})")
        await self._navigate(self._backend.navigate(url, wait_until), url, wait_until, timeout)

    async def go_back(self, *, wait_until: LoadState | None = None, timeout: float | None = None) -> bool:
        """Go one history entry back. Returns False when there is nothing to go back to."""
        self._ensure_open()
        wait_until = wait_until or self._wait_until
        return await self._navigate(self._backend.history(-1, wait_until), "history -1", wait_until, timeout)

    async def go_forward(self, *, wait_until: LoadState | None = None, timeout: float | None = None) -> bool:
        self._ensure_open()
        wait_until = wait_until or self._wait_until
        return await self._navigate(self._backend.history(1, wait_until), "history +1", wait_until, timeout)

    async def reload(self, *, wait_until: LoadState | None = None, timeout: float | None = None) -> None:
        self._ensure_open()
        wait_until = wait_until or self._wait_until
        target = await self._url_for_errors() or "current page"
        await self._navigate(self._backend.reload(wait_until), target, wait_until, timeout)

    async def wait_for_load_state(self, state: LoadState = "load", *, timeout: float | None = None) -> None:
        """Wait until ``state`` is reached.

        Returns immediately when no navigation is in flight and the page is
        already at or past ``state``.
        """
        self._ensure_open()
        if state not in LOAD_STATE_ORDER:
            raise ValueError(f"Unknown load state {state!r}")
        if self._state is PageState.IDLE:
            reached = await self._backend.ready_state()
            if reached is not None and LOAD_STATE_ORDER[reached] >= LOAD_STATE_ORDER[state]:
                return
        timeout_ms = self._action_timeout if timeout is None else _check_timeout(timeout)
        try:
            await asyncio.wait_for(self._backend.wait_for_load_signal(state), timeout=_seconds(timeout_ms))
        except asyncio.TimeoutError:
            raise ActionTimeoutError(
                f"Load state {state!r} not reached within {timeout_ms:.0f}ms",
                url=await self._url_for_errors(),
            ) from None

    async def wait_for_timeout(self, timeout: float) -> None:
        await asyncio.sleep(_check_timeout(timeout) / 1000)

    async def bring_to_front(self) -> None:
        """No-op: the one page is always the active surface."""

    # ── Reads ──────────────────────────────────────────────────────────────

    async def url(self) -> str:
        self._ensure_open()
        return await self._backend.current_url()

    async def title(self) -> str:
        self._ensure_open()
        return await self._backend.current_title()

    async def evaluate(self, script: str, *, timeout: float | None = None) -> Any:
        self._ensure_open()
        timeout_ms = self._action_timeout if timeout is None else _check_timeout(timeout)
        try:
            result = await asyncio.wait_for(self._backend.evaluate(script), timeout=_seconds(timeout_ms))
        except asyncio.TimeoutError:
            raise ActionTimeoutError(
                f"evaluate did not finish within {timeout_ms:.0f}ms",
                url=await self._url_for_errors(),
            ) from None
        except ScriptEvaluationError as e:
            if e.url is not None:
                raise
            raise ScriptEvaluationError(str(e), url=await self._url_for_errors()) from e
        except SessionBackendError as e:
            raise ScriptEvaluationError(f"evaluate failed: {e}", url=await self._url_for_errors()) from e
        finally:
            await self._sync_navigation()
        return result

    # ── Snapshots ──────────────────────────────────────────────────────────

    async def snapshot(
        self,
        options: SnapshotOptions | None = None,
        *,
        track: str | None = None,
        max_depth: int | None = None,
        timeout: float | None = None,
    ) -> Snapshot:
        """Take an accessibility snapshot and make its registry the current one.

        Refs from every earlier snapshot of this page are superseded; their
        tokens stay bound to the snapshot that issued them, and new refs
        continue numbering where the last snapshot stopped. With
        ``track`` set, ``Snapshot.incremental`` holds only the lines that were
        not in the previous snapshot taken under the same track name.
        """
        self._ensure_open()
        if options is None:
            options = SnapshotOptions(track=track, max_depth=max_depth)
        await self._sync_navigation()
        timeout_ms = self._action_timeout if timeout is None else _check_timeout(timeout)
        try:
            nodes = await asyncio.wait_for(self._backend.query_accessible_tree(), timeout=_seconds(timeout_ms))
        except asyncio.TimeoutError:
            raise ActionTimeoutError(
                f"snapshot did not finish within {timeout_ms:.0f}ms",
                url=await self._url_for_errors(),
            ) from None

        self._generation += 1
        snap = build_snapshot(
            nodes,
            page_id=self.id,
            generation=self._generation,
            navigation_epoch=self._navigation_epoch,
            options=options,
            previous_text=self._tracked.get(options.track) if options.track else None,
            first_ref=self._next_ref,
        )
        self._registry = snap.registry
        self._next_ref += len(snap.registry)
        self._issued.update(dict.fromkeys(snap.registry, snap.registry))
        if options.track:
            self._tracked[options.track] = snap.text
        self._emit("snapshot", snap)
        return snap

    async def snapshot_for_ai(self, track: str | None = None) -> dict[str, str | None]:
        snap = await self.snapshot(track=track)
        return {"full": snap.text, "incremental": snap.incremental}

    # ── Locators ───────────────────────────────────────────────────────────

    def locator(self, selector: str, *, snapshot: Snapshot | None = None) -> Locator:
        """Deferred handle for ``selector``. Nothing is resolved until an action runs.

        Ref selectors bind to ``snapshot``'s registry when given, else to the
        snapshot that issued the token since the last navigation, else to the
        current one.
        """
        self._ensure_open()
        return Locator(self, selector, registry=snapshot.registry if snapshot is not None else None)

    def get_by_role(self, role: str, *, name: str | None = None, exact: bool = False) -> Locator:
        if name is None:
            return self.locator(f"role={role}")
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return self.locator(f'role={role}[name="{escaped}"{"s" if exact else ""}]')

    def get_by_text(self, text: str, *, exact: bool = False) -> Locator:
        if exact:
            escaped = text.replace("\\", "\\\\").replace('"', '\\"')
            return self.locator(f'text="{escaped}"')
        return self.locator(f"text={text}")

    async def _run_action(
        self,
        kind: str,
        operation: Callable[[], Awaitable[dict]],
        *,
        timeout: float | None = None,
        selector: str | None = None,
    ) -> Any:
        """Run one resolve+dispatch under the action timeout and apply any navigation it caused."""
        self._ensure_open()
        timeout_ms = self._action_timeout if timeout is None else _check_timeout(timeout)
        try:
            result = await asyncio.wait_for(operation(), timeout=_seconds(timeout_ms))
        except asyncio.TimeoutError:
            raise ActionTimeoutError(
                f"{kind} did not finish within {timeout_ms:.0f}ms",
                selector=selector,
                url=await self._url_for_errors(),
            ) from None
        if result.get("navigated"):
            self._invalidate_refs()
            self._on_navigated(result.get("url"), "load")
        else:
            await self._sync_navigation()
        return result.get("value")

    # ── Teardown ───────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close the page. With one page per context this closes the context too."""
        if self._context is not None:
            await self._context.close()
        else:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registry = None
        logger.info(f"[Page] Closed {self.id}")
        self._emit("close", self)
        self._listeners.clear()

    def __repr__(self) -> str:
        return f"<Page {self.id[-8:]} state={self._state.value} closed={self._closed}>"
