"""Raw Chrome DevTools Protocol transport.

One WebSocket per target. Commands are correlated to responses by message id;
messages without an id are protocol events and are fanned out to listeners
registered with :meth:`CDPConnection.on`.
"""

import asyncio
import json
import logging
from typing import Any, Callable

import aiohttp

from refbrowser.exceptions import CDPConnectionClosed, CDPError, SessionBackendError

logger = logging.getLogger(__name__)

MAX_MSG_SIZE = 50 * 1024 * 1024


async def list_targets(http_url: str) -> list[dict]:
    """Return the CDP target list exposed at ``<http_url>/json``."""
    async with aiohttp.ClientSession() as s:
        async with s.get(f"{http_url.rstrip('/')}/json") as resp:
            if resp.status != 200:
                raise SessionBackendError(f"CDP discovery returned HTTP {resp.status}")
            return await resp.json(content_type=None)


async def get_ws_url(http_url: str, target_id: str | None = None) -> str:
    """Get the WebSocket debugger URL for a CDP target.

    Without ``target_id`` the first target of type ``page`` is used.
    """
    targets = await list_targets(http_url)
    for t in targets:
        if target_id is not None and t.get("id") != target_id:
            continue
        if target_id is None and t.get("type") != "page":
            continue
        ws_url = t.get("webSocketDebuggerUrl")
        if ws_url:
            return ws_url
    if target_id is not None:
        raise SessionBackendError(f"CDP target not found: {target_id}")
    raise SessionBackendError(f"No page target available at {http_url}")


class CDPConnection:
    """Manages a WebSocket connection to a CDP target."""

    def __init__(self, ws_url: str):
        self.ws_url = ws_url
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._msg_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: dict[str, list[Callable[[dict], Any]]] = {}
        self._reader_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._ws is not None
            and not self._ws.closed
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def connect(self):
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.ws_url, max_msg_size=MAX_MSG_SIZE)
        except aiohttp.ClientError as e:
            await self._session.close()
            raise SessionBackendError(f"Cannot connect to {self.ws_url}: {e}") from e
        self._reader_task = asyncio.create_task(self._read_loop())
        self._closed = False
        logger.debug(f"[CDP] Connected to {self.ws_url}")

    async def close(self):
        self._closed = True
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._ws:
            await self._ws.close()
        if self._session:
            await self._session.close()
        self._fail_pending()

    def on(self, method: str, callback: Callable[[dict], Any]):
        """Call ``callback(params)`` for every ``method`` event."""
        self._listeners.setdefault(method, []).append(callback)

    def _fail_pending(self):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(CDPConnectionClosed("CDP connection is closed"))
        self._pending.clear()

    async def _read_loop(self):
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    msg_id = data.get("id")
                    if msg_id is not None:
                        fut = self._pending.get(msg_id)
                        if fut is not None and not fut.done():
                            fut.set_result(data)
                    elif "method" in data:
                        self._dispatch_event(data["method"], data.get("params", {}))
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._fail_pending()

    def _dispatch_event(self, method: str, params: dict):
        for callback in self._listeners.get(method, []):
            try:
                callback(params)
            except Exception as e:
                logger.warning(f"[CDP] Listener for {method} failed: {e}")

    async def send(self, method: str, params: dict | None = None, timeout: float = 15.0) -> dict:
        """Send a CDP command and wait for the response."""
        if self._ws is None or self._ws.closed or self._closed:
            raise CDPConnectionClosed("CDP connection is closed")
        self._msg_id += 1
        msg_id = self._msg_id
        message = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[msg_id] = future

        try:
            await self._ws.send_json(message)
            result = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SessionBackendError(f"CDP {method} got no response within {timeout}s") from e
        finally:
            self._pending.pop(msg_id, None)

        if "error" in result:
            raise CDPError(method, result["error"])
        return result.get("result", {})

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.close()
