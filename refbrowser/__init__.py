"""Ref-addressed page automation over the Chrome DevTools Protocol."""

from refbrowser.config import RefBrowserConfig
from refbrowser.context import BrowserContext, SecurityPolicy
from refbrowser.exceptions import (
    ActionTimeoutError,
    AmbiguousReferenceError,
    DirectoryNotAllowedError,
    ElementNotFoundError,
    NavigationTimeoutError,
    ProtocolNotAllowedError,
    RefBrowserError,
    ReferenceOwnershipError,
    ScriptEvaluationError,
    SessionBackendError,
    SessionInitError,
    StaleReferenceError,
    TargetClosedError,
)
from refbrowser.factory import ContextFactory, ContextHandle, create_context
from refbrowser.locator import Locator
from refbrowser.page import Page
from refbrowser.session import CDPSessionBackend, SessionBackend
from refbrowser.snapshot import Snapshot
from refbrowser.views import ClientInfo, ContextOptions, SnapshotOptions

__version__ = "0.1.0"

__all__ = [
    "ActionTimeoutError",
    "AmbiguousReferenceError",
    "BrowserContext",
    "CDPSessionBackend",
    "ClientInfo",
    "ContextFactory",
    "ContextHandle",
    "ContextOptions",
    "DirectoryNotAllowedError",
    "ElementNotFoundError",
    "Locator",
    "NavigationTimeoutError",
    "Page",
    "ProtocolNotAllowedError",
    "RefBrowserConfig",
    "RefBrowserError",
    "ReferenceOwnershipError",
    "ScriptEvaluationError",
    "SecurityPolicy",
    "SessionBackend",
    "SessionBackendError",
    "SessionInitError",
    "Snapshot",
    "SnapshotOptions",
    "StaleReferenceError",
    "TargetClosedError",
    "create_context",
]
