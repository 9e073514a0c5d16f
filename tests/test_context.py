"""
Tests for BrowserContext and SecurityPolicy.

Tests:
1. Security policy - default deny, wholesale replacement, path checks.
2. Context - single page, downloads, idempotent close.
"""

import pytest

from fakes import EXAMPLE_URL, IANA_URL, FakeBackend

from refbrowser.context import BrowserContext, SecurityPolicy
from refbrowser.exceptions import (
    DirectoryNotAllowedError,
    ProtocolNotAllowedError,
    SessionBackendError,
    TargetClosedError,
)

# ============================================================
# 1. Security Policy
# ============================================================


class TestSecurityPolicy:
    def test_default_denies_everything(self, tmp_path):
        policy = SecurityPolicy()
        with pytest.raises(ProtocolNotAllowedError):
            policy.check_url("https://example.com/")
        with pytest.raises(DirectoryNotAllowedError):
            policy.check_path(tmp_path / "file.txt")

    def test_protocols_are_normalized(self):
        policy = SecurityPolicy(["HTTPS:", " http "])
        assert policy.allowed_protocols == ["http", "https"]
        policy.check_url("HTTPS://example.com/")

    def test_empty_list_means_deny_all(self):
        policy = SecurityPolicy(["https"])
        policy.set_allowed_protocols([])
        with pytest.raises(ProtocolNotAllowedError) as exc:
            policy.check_url("https://example.com/")
        assert "allowed: none" in str(exc.value)

    def test_check_path_inside_root(self, tmp_path):
        policy = SecurityPolicy(directories=[tmp_path])
        assert policy.check_path(tmp_path / "a" / "b.txt") == (tmp_path / "a" / "b.txt").resolve()
        assert policy.check_path(tmp_path) == tmp_path.resolve()

    def test_check_path_sibling_prefix_is_rejected(self, tmp_path):
        allowed = tmp_path / "data"
        policy = SecurityPolicy(directories=[allowed])
        with pytest.raises(DirectoryNotAllowedError):
            policy.check_path(tmp_path / "data-other" / "x.txt")

    def test_check_path_symlink_escape_is_rejected(self, tmp_path):
        allowed = tmp_path / "allowed"
        allowed.mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        (allowed / "link").symlink_to(outside)
        policy = SecurityPolicy(directories=[allowed])
        with pytest.raises(DirectoryNotAllowedError):
            policy.check_path(allowed / "link" / "x.txt")


# ============================================================
# 2. Context
# ============================================================


class TestBrowserContext:
    async def test_pages_always_one(self, context, page):
        assert context.pages() == [page]
        await page.goto(EXAMPLE_URL)
        await page.goto(IANA_URL)
        assert context.pages() == [page]

    async def test_pages_returns_copy(self, context):
        context.pages().clear()
        assert len(context.pages()) == 1

    async def test_second_page_violates_invariant(self, context):
        with pytest.raises(RuntimeError):
            context._create_page()
        assert len(context.pages()) == 1

    async def test_multi_page_limit_is_configurable(self):
        ctx = BrowserContext(FakeBackend(), max_pages=2)
        ctx._create_page()
        ctx._create_page()
        assert len(ctx.pages()) == 2
        await ctx.close()

    async def test_set_allowed_protocols_replaces_wholesale(self, context, page):
        context._set_allowed_protocols(["http"])
        with pytest.raises(ProtocolNotAllowedError):
            await page.goto(EXAMPLE_URL)

    async def test_set_allowed_directories(self, context, tmp_path):
        context._set_allowed_directories([])
        with pytest.raises(DirectoryNotAllowedError):
            await context.set_download_directory(tmp_path)

    async def test_set_download_directory(self, context, backend, downloads):
        resolved = await context.set_download_directory(downloads)
        assert backend.download_dir == str(downloads.resolve())
        assert resolved == downloads.resolve()

    async def test_close_is_idempotent(self, context, page, backend):
        closes = []
        page.on("close", closes.append)
        await context.close()
        await context.close()
        assert backend.close_count == 1
        assert closes == [page]
        assert context.is_closed()

    async def test_close_swallows_transport_errors(self, context, backend):
        backend.close_error = SessionBackendError("socket gone")
        await context.close()
        assert context.is_closed()

    async def test_close_propagates_programming_errors(self, backend):
        ctx = BrowserContext(backend)
        backend.close_error = KeyError("bug")
        with pytest.raises(KeyError):
            await ctx.close()

    async def test_closed_context_rejects_new_pages(self, context):
        await context.close()
        with pytest.raises(TargetClosedError):
            context._create_page()

    async def test_async_context_manager(self):
        backend = FakeBackend()
        async with BrowserContext(backend) as ctx:
            ctx._create_page()
        assert ctx.is_closed()
        assert ctx.pages()[0].is_closed()
