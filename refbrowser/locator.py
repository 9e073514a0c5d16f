"""Deferred action handles.

A Locator owns no live node. It keeps *how* to find its element and resolves
again on every action, since navigation or mutation may have happened since it
was created.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from refbrowser.exceptions import (
    AmbiguousReferenceError,
    ElementNotFoundError,
    ReferenceOwnershipError,
)
from refbrowser.registry import ReferenceRegistry
from refbrowser.resolver import parse_selector
from refbrowser.views import ActionKind, ResolvedTarget

if TYPE_CHECKING:
    from refbrowser.page import Page

logger = logging.getLogger(__name__)


class Locator:
    def __init__(
        self,
        page: "Page",
        selector: str,
        *,
        registry: ReferenceRegistry | None = None,
        nth: int | None = None,
    ):
        self._page = page
        self._selector = selector
        self._parsed = parse_selector(selector)
        self._nth = nth
        self._label: str | None = None
        # Ref locators stay bound to the snapshot generation they came from.
        if registry is None and self._parsed.is_ref:
            registry = page._registry_for(self._parsed.ref)
        self._registry = registry

    @property
    def page(self) -> "Page":
        return self._page

    @property
    def selector(self) -> str:
        return self._selector

    @property
    def label(self) -> str | None:
        return self._label

    def describe(self, label: str) -> "Locator":
        """Attach a human-readable label used in logs. Returns this same locator."""
        self._label = label
        return self

    # ── Narrowing ──────────────────────────────────────────────────────────

    def nth(self, index: int) -> "Locator":
        if self._parsed.is_ref and index not in (0, -1):
            raise ValueError(f"{self._selector} addresses a single element; nth({index}) is out of range")
        narrowed = Locator(self._page, self._selector, registry=self._registry, nth=index)
        narrowed._label = self._label
        return narrowed

    def first(self) -> "Locator":
        return self.nth(0)

    def last(self) -> "Locator":
        return self.nth(-1)

    # ── Resolution ─────────────────────────────────────────────────────────

    def _check_owner(self):
        if self._registry is not None and self._registry.page_id != self._page.id:
            raise ReferenceOwnershipError(
                f"Ref {self._parsed.ref} came from a snapshot of page {self._registry.page_id}, "
                f"not page {self._page.id}",
                selector=self._selector,
            )

    async def _resolve_all(self) -> list[ResolvedTarget]:
        if self._parsed.is_ref:
            return [await self.resolve()]
        return await self._page._resolver.resolve_all(self._parsed)

    async def resolve(self) -> ResolvedTarget:
        """Resolve to a single live target against the page as it is now."""
        page = self._page
        page._ensure_open()
        self._check_owner()
        await page._sync_navigation()
        if self._parsed.is_ref:
            return await page._resolver.resolve_ref(
                self._parsed.ref,
                registry=self._registry,
                current=page._registry,
                navigation_epoch=page._navigation_epoch,
                selector=self._selector,
                url=await page._url_for_errors(),
            )

        targets = await page._resolver.resolve_all(self._parsed)
        if not targets:
            raise ElementNotFoundError("No element matches", selector=self._selector, url=await page._url_for_errors())
        if self._nth is None:
            if len(targets) > 1:
                raise AmbiguousReferenceError(
                    f"Selector matches {len(targets)} elements; narrow it or use first()/nth()",
                    selector=self._selector,
                    url=await page._url_for_errors(),
                )
            return targets[0]
        try:
            return targets[self._nth]
        except IndexError:
            raise ElementNotFoundError(
                f"nth({self._nth}) requested but only {len(targets)} element(s) match",
                selector=self._selector,
                url=await page._url_for_errors(),
            ) from None

    async def _act(self, kind: ActionKind, payload: dict | None = None, timeout: float | None = None) -> Any:
        async def run() -> dict:
            target = await self.resolve()
            logger.debug(f"[Locator] {self._selector} → {target.resolved_selector}")
            return await self._page._backend.dispatch_action(target.backend_node_id, kind, payload)

        label = f" {self._label!r}" if self._label else ""
        logger.info(f"[Locator] {kind}{label} ({self._selector})")
        return await self._page._run_action(kind, run, timeout=timeout, selector=self._selector)

    # ── Actions ────────────────────────────────────────────────────────────

    async def click(self, *, timeout: float | None = None) -> None:
        await self._act("click", timeout=timeout)

    async def dblclick(self, *, timeout: float | None = None) -> None:
        await self._act("dblclick", timeout=timeout)

    async def hover(self, *, timeout: float | None = None) -> None:
        await self._act("hover", timeout=timeout)

    async def fill(self, value: str, *, timeout: float | None = None) -> None:
        await self._act("fill", {"value": value}, timeout=timeout)

    async def type(self, text: str, *, timeout: float | None = None) -> None:
        await self._act("type", {"text": text}, timeout=timeout)

    async def press(self, key: str, *, timeout: float | None = None) -> None:
        await self._act("press", {"key": key}, timeout=timeout)

    async def check(self, *, timeout: float | None = None) -> None:
        await self._act("check", timeout=timeout)

    async def uncheck(self, *, timeout: float | None = None) -> None:
        await self._act("uncheck", timeout=timeout)

    async def select_option(self, values: str | list[str], *, timeout: float | None = None) -> list[str]:
        if isinstance(values, str):
            values = [values]
        return await self._act("select_option", {"values": values}, timeout=timeout) or []

    async def set_input_files(self, files: str | Path | list[str | Path], *, timeout: float | None = None) -> None:
        if isinstance(files, (str, Path)):
            files = [files]
        policy = self._page._security_policy()
        paths = [str(policy.check_path(f)) for f in files]
        await self._act("set_input_files", {"files": paths}, timeout=timeout)

    async def text_content(self, *, timeout: float | None = None) -> str | None:
        return await self._act("text_content", timeout=timeout)

    async def inner_text(self, *, timeout: float | None = None) -> str:
        return await self._act("inner_text", timeout=timeout) or ""

    async def get_attribute(self, name: str, *, timeout: float | None = None) -> str | None:
        return await self._act("get_attribute", {"name": name}, timeout=timeout)

    async def input_value(self, *, timeout: float | None = None) -> str:
        return await self._act("input_value", timeout=timeout) or ""

    async def is_visible(self) -> bool:
        try:
            return bool(await self._act("is_visible"))
        except ElementNotFoundError:
            return False

    async def count(self, *, timeout: float | None = None) -> int:
        async def run() -> dict:
            return {"value": len(await self._resolve_all())}

        try:
            return await self._page._run_action("count", run, timeout=timeout, selector=self._selector)
        except ElementNotFoundError:
            return 0

    async def all_text_contents(self, *, timeout: float | None = None) -> list[str]:
        async def run() -> dict:
            out = []
            for target in await self._resolve_all():
                result = await self._page._backend.dispatch_action(target.backend_node_id, "text_content")
                out.append(result.get("value") or "")
            return {"value": out}

        return await self._page._run_action("all_text_contents", run, timeout=timeout, selector=self._selector)

    def __repr__(self) -> str:
        nth = f".nth({self._nth})" if self._nth is not None else ""
        label = f" label={self._label!r}" if self._label else ""
        return f"<Locator {self._selector!r}{nth}{label}>"


class Keyboard:
    """Key input to whatever element has focus."""

    def __init__(self, page: "Page"):
        self._page = page

    async def type(self, text: str, *, timeout: float | None = None) -> None:
        logger.info(f"[Keyboard] type {len(text)} chars")
        await self._page._run_action(
            "type",
            lambda: self._page._backend.dispatch_action(None, "type", {"text": text}),
            timeout=timeout,
        )

    async def press(self, key: str, *, timeout: float | None = None) -> None:
        logger.info(f"[Keyboard] press {key}")
        await self._page._run_action(
            "press",
            lambda: self._page._backend.dispatch_action(None, "press", {"key": key}),
            timeout=timeout,
        )
