"""Context facade and the security policy it enforces."""

import logging
from pathlib import Path
from urllib.parse import urlparse

from uuid_extensions import uuid7str

from refbrowser.exceptions import (
    DirectoryNotAllowedError,
    ProtocolNotAllowedError,
    SessionBackendError,
    TargetClosedError,
)
from refbrowser.page import Page
from refbrowser.session import SessionBackend
from refbrowser.views import ClientInfo

logger = logging.getLogger(__name__)


def _normalize_protocol(protocol: str) -> str:
    return protocol.strip().lower().rstrip(":")


class SecurityPolicy:
    """Allowed URL protocols and filesystem directories.

    Both sets start empty, and empty means nothing is allowed.
    """

    def __init__(self, protocols: list[str] | None = None, directories: list[str | Path] | None = None):
        self._protocols: frozenset[str] = frozenset()
        self._directories: tuple[Path, ...] = ()
        self.set_allowed_protocols(protocols or [])
        self.set_allowed_directories(directories or [])

    @property
    def allowed_protocols(self) -> list[str]:
        return sorted(self._protocols)

    @property
    def allowed_directories(self) -> list[Path]:
        return list(self._directories)

    def set_allowed_protocols(self, protocols: list[str]) -> None:
        self._protocols = frozenset(_normalize_protocol(p) for p in protocols if _normalize_protocol(p))

    def set_allowed_directories(self, directories: list[str | Path]) -> None:
        self._directories = tuple(Path(d).expanduser().resolve() for d in directories)

    def check_url(self, url: str) -> None:
        scheme = urlparse(url).scheme.lower()
        if not scheme:
            raise ProtocolNotAllowedError(f"URL {url!r} has no protocol", url=url)
        if scheme not in self._protocols:
            allowed = ", ".join(self.allowed_protocols) or "none"
            raise ProtocolNotAllowedError(f"Protocol {scheme!r} is not allowed (allowed: {allowed})", url=url)

    def check_path(self, path: str | Path) -> Path:
        """Return ``path`` resolved if it sits inside an allowed directory."""
        resolved = Path(path).expanduser().resolve()
        for root in self._directories:
            if resolved == root or root in resolved.parents:
                return resolved
        allowed = ", ".join(str(d) for d in self._directories) or "none"
        raise DirectoryNotAllowedError(f"Path {str(resolved)!r} is outside the allowed directories ({allowed})")

    def __repr__(self) -> str:
        return f"SecurityPolicy(protocols={self.allowed_protocols}, directories={[str(d) for d in self._directories]})"


class BrowserContext:
    """Owns the session, its page(s) and the security policy."""

    def __init__(
        self,
        backend: SessionBackend,
        *,
        policy: SecurityPolicy | None = None,
        client_info: ClientInfo | None = None,
        max_pages: int = 1,
    ):
        self.id = uuid7str()
        self._backend = backend
        self.security_policy = policy or SecurityPolicy()
        self.client_info = client_info or ClientInfo()
        self._max_pages = max_pages
        self._pages: list[Page] = []
        self._closed = False

    def pages(self) -> list[Page]:
        return list(self._pages)

    def is_closed(self) -> bool:
        return self._closed

    def _attach_page(self, page: Page) -> Page:
        if len(self._pages) >= self._max_pages:
            raise RuntimeError(f"Context {self.id} already has {len(self._pages)} page(s); limit is {self._max_pages}")
        self._pages.append(page)
        return page

    def _create_page(self, **kwargs) -> Page:
        if self._closed:
            raise TargetClosedError(f"Context {self.id} is closed")
        return self._attach_page(Page(self._backend, self, **kwargs))

    def _set_allowed_protocols(self, protocols: list[str]) -> None:
        self.security_policy.set_allowed_protocols(protocols)
        logger.info(f"[Context] Allowed protocols: {self.security_policy.allowed_protocols}")

    def _set_allowed_directories(self, directories: list[str | Path]) -> None:
        self.security_policy.set_allowed_directories(directories)
        logger.info(f"[Context] Allowed directories: {[str(d) for d in self.security_policy.allowed_directories]}")

    async def set_download_directory(self, path: str | Path) -> Path:
        if self._closed:
            raise TargetClosedError(f"Context {self.id} is closed")
        resolved = self.security_policy.check_path(path)
        await self._backend.set_download_directory(str(resolved))
        logger.info(f"[Context] Downloads → {resolved}")
        return resolved

    async def close(self) -> None:
        """Close every page, then release the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for page in self._pages:
            page._mark_closed()
        try:
            await self._backend.close()
        except (SessionBackendError, OSError) as e:
            logger.debug(f"[Context] Ignoring error while closing session: {e}")
        logger.info(f"[Context] Closed {self.id} ({self.client_info.name})")

    async def __aenter__(self) -> "BrowserContext":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<BrowserContext {self.id[-8:]} pages={len(self._pages)} closed={self._closed}>"
