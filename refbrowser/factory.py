"""Session factory: builds a ready Context (one session, one page) or fails cleanly."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple

from pydantic import ValidationError

from refbrowser.config import RefBrowserConfig
from refbrowser.context import BrowserContext, SecurityPolicy
from refbrowser.exceptions import SessionInitError
from refbrowser.session import CDPSessionBackend, SessionBackend
from refbrowser.views import ClientInfo, ContextOptions

logger = logging.getLogger(__name__)

BackendFactory = Callable[[RefBrowserConfig], Awaitable[SessionBackend]]


class ContextHandle(NamedTuple):
    context: BrowserContext
    close: Callable[[], Awaitable[None]]


async def connect_cdp(config: RefBrowserConfig) -> SessionBackend:
    return await CDPSessionBackend.connect(config.cdp_url, config.target_id)


class ContextFactory:
    """Creates contexts against one browser endpoint.

    ``backend_factory`` builds the session for a given config; it defaults to
    attaching to the CDP endpoint at ``config.cdp_url``.
    """

    def __init__(self, config: RefBrowserConfig | None = None, backend_factory: BackendFactory | None = None):
        self._config = config
        self._backend_factory = backend_factory or connect_cdp

    @property
    def config(self) -> RefBrowserConfig:
        if self._config is None:
            self._config = RefBrowserConfig.from_env()
        return self._config

    def _merge_config(self, config: RefBrowserConfig | dict[str, Any] | None) -> RefBrowserConfig:
        if config is None:
            return self.config
        if isinstance(config, RefBrowserConfig):
            return config
        return RefBrowserConfig.model_validate({**self.config.model_dump(), **config})

    async def create_context(
        self,
        options: ContextOptions | dict[str, Any] | None = None,
        client_info: ClientInfo | dict[str, Any] | None = None,
        config: RefBrowserConfig | dict[str, Any] | None = None,
    ) -> ContextHandle:
        """Connect a session and wrap it in a Context owning exactly one Page.

        Any failure raises :class:`SessionInitError`; a session that was
        already connected is closed first.
        """
        try:
            cfg = self._merge_config(config)
            opts = options if isinstance(options, ContextOptions) else ContextOptions.model_validate(options or {})
            client = client_info if isinstance(client_info, ClientInfo) else ClientInfo.model_validate(client_info or {})
            policy = SecurityPolicy(
                protocols=opts.allowed_protocols if opts.allowed_protocols is not None else cfg.allowed_protocols,
                directories=opts.allowed_directories if opts.allowed_directories is not None else cfg.allowed_directories,
            )
        except (ValidationError, ValueError, TypeError) as e:
            raise SessionInitError(f"Invalid context configuration: {e}") from e

        try:
            backend = await self._backend_factory(cfg)
        except Exception as e:
            raise SessionInitError(f"Session unreachable at {cfg.cdp_url}: {e}") from e

        context = BrowserContext(backend, policy=policy, client_info=client)
        try:
            context._create_page(
                navigation_timeout=opts.navigation_timeout if opts.navigation_timeout is not None else cfg.navigation_timeout,
                action_timeout=opts.action_timeout if opts.action_timeout is not None else cfg.action_timeout,
                wait_until=cfg.wait_until,
            )
            if opts.downloads_path:
                await context.set_download_directory(opts.downloads_path)
        except Exception as e:
            await context.close()
            raise SessionInitError(f"Context setup failed: {e}") from e

        logger.info(
            f"[Factory] Context {context.id} ready for {client.name}"
            f"{' ' + client.version if client.version else ''} "
            f"(protocols={policy.allowed_protocols})"
        )
        return ContextHandle(context, context.close)


async def create_context(
    options: ContextOptions | dict[str, Any] | None = None,
    client_info: ClientInfo | dict[str, Any] | None = None,
    config: RefBrowserConfig | dict[str, Any] | None = None,
    *,
    backend_factory: BackendFactory | None = None,
) -> ContextHandle:
    """Shortcut for ``ContextFactory(backend_factory=...).create_context(...)``."""
    return await ContextFactory(backend_factory=backend_factory).create_context(options, client_info, config)
