"""Error taxonomy for ref-addressed page automation.

Page-level errors carry the selector (or ref) that failed and the Page URL at
the moment of failure, so a caller can reconstruct state from the message
alone without replaying history.
"""


class RefBrowserError(Exception):
    """Base class for every error raised by refbrowser."""

    def __init__(self, message: str, *, selector: str | None = None, url: str | None = None):
        self.selector = selector
        self.url = url
        details = []
        if selector is not None:
            details.append(f"selector={selector!r}")
        if url is not None:
            details.append(f"url={url!r}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


# ── Policy ───────────────────────────────────────────────────────────────────

class ProtocolNotAllowedError(RefBrowserError):
    """URL scheme is not in the Context's allowed protocols."""


class DirectoryNotAllowedError(RefBrowserError):
    """Filesystem path is outside every allowed directory."""


# ── Timeouts ─────────────────────────────────────────────────────────────────

class NavigationTimeoutError(RefBrowserError, TimeoutError):
    """Navigation did not settle within the navigation timeout."""


class ActionTimeoutError(RefBrowserError, TimeoutError):
    """A locator action or load-state wait exceeded the action timeout."""


# ── Evaluation ───────────────────────────────────────────────────────────────

class ScriptEvaluationError(RefBrowserError):
    """Script raised inside the page or could not be evaluated."""


# ── Resolution ───────────────────────────────────────────────────────────────

class ResolutionError(RefBrowserError):
    """Base for failures turning a selector into a live element."""


class StaleReferenceError(ResolutionError):
    """Ref belongs to a registry that no longer describes the page."""


class AmbiguousReferenceError(ResolutionError):
    """More than one live element matches and nothing breaks the tie."""


class ElementNotFoundError(ResolutionError):
    """No live element matches."""


class ReferenceOwnershipError(RefBrowserError, TypeError):
    """Ref was produced by a snapshot of a different Page."""


# ── Session ──────────────────────────────────────────────────────────────────

class SessionInitError(RefBrowserError):
    """Context construction failed; no partial state was kept."""


class SessionBackendError(RefBrowserError):
    """Transport or protocol failure talking to the browser session."""


class CDPError(SessionBackendError):
    """CDP command returned an error payload."""

    def __init__(self, method: str, error: dict | str):
        self.method = method
        self.error = error
        super().__init__(f"CDP {method} error: {error}")


class CDPConnectionClosed(SessionBackendError):
    """WebSocket to the CDP target is closed."""


class TargetClosedError(RefBrowserError):
    """Operation on a Page or Context that was already closed."""
