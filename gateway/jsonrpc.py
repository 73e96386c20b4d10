"""Bidirectional JSON-RPC 2.0 over a Content-Length framed byte stream.

A ``JsonRpcConnection`` is symmetric: the same object can issue requests
(client role) and answer them (server role). Inbound requests are dispatched
as independent tasks, so a slow handler never blocks the read loop and
responses may be written out of order.

Bytes enter through ``feed_data()``. ``serve()`` is the usual driver, reading
from an ``asyncio.StreamReader`` until end-of-stream; tests can call
``feed_data()`` directly.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from gateway.framing import FrameDecoder, FramingError, encode_message

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000

READ_CHUNK_SIZE = 64 * 1024

Handler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class JsonRpcError(Exception):
    """Error carried in a JSON-RPC error response."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class ConnectionClosedError(Exception):
    """The connection ended while a request was waiting for its response."""


class JsonRpcConnection:
    """One endpoint of a framed JSON-RPC conversation."""

    def __init__(self, writer: Any, reader: Optional[asyncio.StreamReader] = None,
                 *, name: str = "jsonrpc"):
        self.name = name
        self._writer = writer
        self._reader = reader
        self._decoder = FrameDecoder(on_error=self._on_framing_error)
        self._pending: Dict[Any, asyncio.Future] = {}
        self._next_id = 0
        self._handlers: Dict[str, Handler] = {}
        self._notification_handlers: Dict[str, Handler] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Registration (server role)
    # ------------------------------------------------------------------

    def register(self, method: str, handler: Handler) -> None:
        """Answer requests for *method* with *handler(params)*."""
        self._handlers[method] = handler

    def on_notification(self, method: str, handler: Handler) -> None:
        self._notification_handlers[method] = handler

    # ------------------------------------------------------------------
    # Outbound (client role)
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None,
                      timeout: Optional[float] = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            JsonRpcError: the peer answered with an error object.
            ConnectionClosedError: the connection closed before the answer.
            asyncio.TimeoutError: *timeout* elapsed.
        """
        if self._closed:
            raise ConnectionClosedError(f"{self.name}: connection closed")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._send(message)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def feed_data(self, data: bytes) -> None:
        """Process a chunk of bytes received from the peer."""
        for message in self._decoder.feed(data):
            self._dispatch(message)

    def start(self) -> asyncio.Task:
        """Run ``serve()`` in the background and return its task."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self.serve())
        return self._reader_task

    async def serve(self) -> None:
        """Read from the stream until it ends, then close the connection."""
        if self._reader is None:
            raise RuntimeError(f"{self.name}: no reader attached")
        try:
            while not self._closed:
                data = await self._reader.read(READ_CHUNK_SIZE)
                if not data:
                    logger.debug("%s: end of stream", self.name)
                    break
                self.feed_data(data)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug("%s: read loop stopped: %s", self.name, e)
        finally:
            await self.close()

    async def close(self, reason: str = "connection closed") -> None:
        """Fail every in-flight request and stop accepting new work."""
        if self._closed:
            return
        self._closed = True

        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(ConnectionClosedError(f"{self.name}: {reason}"))
        self._pending.clear()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        if self._reader_task is not None and self._reader_task is not current:
            self._reader_task.cancel()

    def _dispatch(self, message: Dict[str, Any]) -> None:
        if "method" in message:
            if message.get("id") is not None:
                self._spawn(self._handle_request(message))
            else:
                self._spawn(self._handle_notification(message))
            return

        if "id" in message:
            self._handle_response(message)
            return

        logger.warning("%s: ignoring message with neither method nor id", self.name)

    def _handle_response(self, message: Dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.debug("%s: response for unknown request id %r", self.name, message.get("id"))
            return

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"code": SERVER_ERROR, "message": str(error)}
            future.set_exception(JsonRpcError(
                error.get("code", SERVER_ERROR),
                error.get("message", "Unknown error"),
                error.get("data"),
            ))
        else:
            future.set_result(message.get("result"))

    async def _handle_request(self, message: Dict[str, Any]) -> None:
        request_id = message["id"]
        method = message.get("method")
        params = message.get("params") or {}

        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            await self._send_error(request_id, JsonRpcError(
                METHOD_NOT_FOUND, f"Method not found: {method}"
            ))
            return

        try:
            result = await _call_handler(handler, params)
        except asyncio.CancelledError:
            raise
        except JsonRpcError as e:
            await self._send_error(request_id, e)
            return
        except ValidationError as e:
            await self._send_error(request_id, JsonRpcError(
                INVALID_PARAMS, f"Invalid params for {method}",
                e.errors(include_url=False, include_context=False),
            ))
            return
        except Exception as e:
            logger.exception("%s: handler for %s failed", self.name, method)
            await self._send_error(request_id, JsonRpcError(SERVER_ERROR, str(e) or type(e).__name__))
            return

        if isinstance(result, BaseModel):
            result = result.model_dump(by_alias=True, exclude_none=True)
        await self._send({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def _handle_notification(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug("%s: no handler for notification %s", self.name, method)
            return
        try:
            await _call_handler(handler, message.get("params") or {})
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: notification handler for %s failed", self.name, method)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send_error(self, request_id: Any, error: JsonRpcError) -> None:
        await self._send({"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()})

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            logger.debug("%s: dropping outbound message on closed connection", self.name)
            return
        self._writer.write(encode_message(message))
        drain = getattr(self._writer, "drain", None)
        if drain is not None:
            result = drain()
            if inspect.isawaitable(result):
                await result

    def _on_framing_error(self, error: FramingError) -> None:
        logger.warning("%s: %s", self.name, error)


async def _call_handler(handler: Handler, params: Dict[str, Any]) -> Any:
    result = handler(params)
    if inspect.isawaitable(result):
        result = await result
    return result
