"""
Newline-delimited JSON call channel between the engine and its sandbox child.

Either side may issue requests; replies carry the request id and either a
``result`` or a structured ``error`` ({type, message, details}). Requests that
get no reply within their timeout are rejected with RPCTimeout. When the
stream ends every outstanding request is rejected with ProcessFault and the
channel refuses further traffic.
"""

import asyncio
import json
import logging
import sys
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from .errors import ProcessFault, RPCTimeout, error_from_payload, error_to_payload

logger = logging.getLogger("uvicorn.error")

MESSAGE_TYPES = (
    "ready",
    "ping",
    "pong",
    "execute",
    "execute_result",
    "tool_request",
    "tool_response",
    "shutdown",
)
REPLY_TYPES = {"ping": "pong", "execute": "execute_result", "tool_request": "tool_response"}
STREAM_LIMIT = 16 * 1024 * 1024

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def encode_message(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False, default=str) + "\n").encode("utf-8")


def decode_message(line: bytes) -> Dict[str, Any]:
    data = json.loads(line.decode("utf-8"))
    if not isinstance(data, dict) or data.get("type") not in MESSAGE_TYPES:
        raise ValueError("not a channel message")
    return data


@dataclass
class PendingRequest:
    id: str
    message_type: str
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle] = None


class RpcChannel:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        name: str = "channel",
        handlers: Optional[Dict[str, Handler]] = None,
        on_close: Optional[Callable[[ProcessFault], None]] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.name = name
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.on_close = on_close
        self.pending: Dict[str, PendingRequest] = {}
        self._closed = False
        self._fault: Optional[ProcessFault] = None
        self._read_task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fault(self) -> Optional[ProcessFault]:
        return self._fault

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    def _raise_if_closed(self) -> None:
        if self._closed:
            raise self._fault or ProcessFault(f"{self.name} is closed")

    async def send(self, message: Dict[str, Any]) -> None:
        self._raise_if_closed()
        data = encode_message(message)
        try:
            async with self._write_lock:
                self.writer.write(data)
                await self.writer.drain()
        except (ConnectionError, RuntimeError) as exc:
            fault = ProcessFault(f"{self.name}: peer is gone ({exc})")
            self._mark_closed(fault)
            raise fault from exc

    async def notify(self, message_type: str, **payload: Any) -> None:
        await self.send({"type": message_type, **payload})

    async def request(self, message_type: str, payload: Optional[Dict[str, Any]] = None, timeout_s: Optional[float] = None) -> Any:
        if message_type not in REPLY_TYPES:
            raise ValueError(f"{message_type} does not expect a reply")
        self._raise_if_closed()
        loop = asyncio.get_running_loop()
        request_id = uuid.uuid4().hex
        pending = PendingRequest(id=request_id, message_type=message_type, future=loop.create_future())
        if timeout_s and timeout_s > 0:
            pending.timeout_handle = loop.call_later(timeout_s, self._expire, request_id, timeout_s)
        self.pending[request_id] = pending
        try:
            await self.send({"type": message_type, "id": request_id, **(payload or {})})
            return await pending.future
        finally:
            self._discard(request_id)

    def _expire(self, request_id: str, timeout_s: float) -> None:
        pending = self.pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        pending.future.set_exception(
            RPCTimeout(
                f"No response to {pending.message_type} within {timeout_s:g}s",
                {"request_id": request_id, "message_type": pending.message_type, "timeout_s": timeout_s},
            )
        )

    def _discard(self, request_id: str) -> None:
        pending = self.pending.pop(request_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()

    def _resolve(self, message: Dict[str, Any]) -> None:
        request_id = str(message.get("id"))
        pending = self.pending.pop(request_id, None)
        if pending is None:
            logger.debug("[ipc] %s: dropping late %s for %s", self.name, message.get("type"), request_id)
            return
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if pending.future.done():
            return
        if message.get("error") is not None:
            pending.future.set_exception(error_from_payload(message["error"]))
        else:
            pending.future.set_result(message.get("result"))

    def fail_pending(self, exc: BaseException) -> None:
        for request_id in list(self.pending):
            pending = self.pending.pop(request_id)
            if pending.timeout_handle is not None:
                pending.timeout_handle.cancel()
            if not pending.future.done():
                pending.future.set_exception(exc)

    def _mark_closed(self, fault: ProcessFault) -> None:
        if self._closed:
            return
        self._closed = True
        self._fault = fault
        self.fail_pending(fault)
        if self.on_close is not None:
            try:
                self.on_close(fault)
            except Exception:
                logger.exception("[ipc] %s: close callback failed", self.name)

    async def _read_loop(self) -> None:
        reason = f"{self.name}: stream closed"
        try:
            while True:
                line = await self.reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    message = decode_message(line)
                except ValueError:
                    logger.warning("[ipc] %s: ignoring malformed message: %r", self.name, line[:200])
                    continue
                self._dispatch(message)
        except (ConnectionError, ValueError) as exc:
            reason = f"{self.name}: read failed ({exc})"
            logger.warning("[ipc] %s", reason)
        finally:
            self._mark_closed(ProcessFault(reason))

    def _dispatch(self, message: Dict[str, Any]) -> None:
        message_type = message["type"]
        if message_type in REPLY_TYPES.values():
            self._resolve(message)
            return
        handler = self.handlers.get(message_type)
        if handler is None:
            logger.warning("[ipc] %s: no handler for %s", self.name, message_type)
            return
        task = asyncio.create_task(self._handle(handler, message))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _handle(self, handler: Handler, message: Dict[str, Any]) -> None:
        reply_type = REPLY_TYPES.get(message["type"])
        try:
            result = await handler(message)
        except Exception as exc:
            if reply_type is None:
                logger.exception("[ipc] %s: %s handler failed", self.name, message["type"])
                return
            reply: Dict[str, Any] = {"type": reply_type, "id": message.get("id"), "error": error_to_payload(exc)}
        else:
            if reply_type is None:
                return
            reply = {"type": reply_type, "id": message.get("id"), "result": result}
        try:
            await self.send(reply)
        except ProcessFault as exc:
            logger.warning("[ipc] %s: could not deliver %s: %s", self.name, reply_type, exc)

    def abort(self, fault: ProcessFault) -> None:
        self._mark_closed(fault)

    async def close(self) -> None:
        self._mark_closed(ProcessFault(f"{self.name} is closed"))
        tasks = list(self._handler_tasks)
        if self._read_task is not None and not self._read_task.done():
            tasks.append(self._read_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def connect_stdio(limit: int = STREAM_LIMIT) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap this process's stdin/stdout as asyncio streams."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer
