"""Message dispatch and the WebSocket connection to the lobby server."""

from typing import Any, Callable, Dict, Optional
import asyncio
import json
import logging

import websockets
from pydantic import ValidationError

import config
from models import Frame

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


def encode_frame(msg_type: str, data: Any = None) -> str:
    return json.dumps({"type": msg_type, "data": data})


def decode_frame(raw) -> Frame:
    return Frame.model_validate_json(raw)


class Dispatcher:
    """Single-consumer message queue with one handler per message type.

    Handlers are plain functions and run to completion before the next
    message is taken off the queue, so nothing they touch needs a lock.
    """

    def __init__(self):
        self.handlers: Dict[str, Handler] = {}
        self.queue: asyncio.Queue = asyncio.Queue()

    def register(self, msg_type: str, handler: Handler):
        if msg_type in self.handlers:
            logger.debug("Replacing handler for %s", msg_type)
        self.handlers[msg_type] = handler

    def post(self, msg_type: str, payload: Any = None):
        self.queue.put_nowait((msg_type, payload))

    def dispatch(self, msg_type: str, payload: Any = None) -> bool:
        handler = self.handlers.get(msg_type)
        if handler is None:
            logger.warning("No handler for message type %s", msg_type)
            return False
        try:
            handler(payload)
        except Exception:
            logger.exception("Handler for %s failed", msg_type)
        return True

    def drain(self) -> int:
        """Dispatch everything already queued, in order."""
        count = 0
        while not self.queue.empty():
            msg_type, payload = self.queue.get_nowait()
            self.dispatch(msg_type, payload)
            self.queue.task_done()
            count += 1
        return count

    async def run(self):
        while True:
            msg_type, payload = await self.queue.get()
            try:
                self.dispatch(msg_type, payload)
            finally:
                self.queue.task_done()


class WebSocketTransport:
    def __init__(self, url: str, dispatcher: Dispatcher,
                 on_connect: Optional[Callable[[], None]] = None):
        self.url = url
        self.dispatcher = dispatcher
        self.on_connect = on_connect
        self.connected = False
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._ws = None
        self._stopped = False

    def send(self, msg_type: str, payload: Any = None):
        """Fire-and-forget; nothing is queued while disconnected."""
        if not self.connected:
            logger.warning("Not connected, dropping %s", msg_type)
            return
        self._outbox.put_nowait(encode_frame(msg_type, payload))

    def receive(self, raw):
        try:
            frame = decode_frame(raw)
        except ValidationError as e:
            logger.warning("Discarding malformed frame: %s", e)
            return
        self.dispatcher.post(frame.type, frame.data)

    async def run(self):
        delay = config.RECONNECT_MIN_DELAY
        while not self._stopped:
            try:
                async with websockets.connect(self.url, max_size=None) as ws:
                    self._ws = ws
                    self._drop_outbox()
                    self.connected = True
                    delay = config.RECONNECT_MIN_DELAY
                    logger.info("Connected to %s", self.url)
                    # ordering across a reconnect is lost; start from a snapshot
                    if self.on_connect:
                        self.on_connect()
                    writer = asyncio.create_task(self._write(ws))
                    try:
                        async for raw in ws:
                            self.receive(raw)
                    finally:
                        await self._stop_writer(writer)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning("Connection to %s lost: %s", self.url, e)
            finally:
                self.connected = False
                self._ws = None
                self._drop_outbox()

            if self._stopped:
                break
            logger.info("Reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, config.RECONNECT_MAX_DELAY)

    async def _write(self, ws):
        while True:
            frame = await self._outbox.get()
            try:
                await ws.send(frame)
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Connection closed, frame not sent: %s", frame)
                raise

    async def _stop_writer(self, writer: asyncio.Task):
        writer.cancel()
        error, = await asyncio.gather(writer, return_exceptions=True)
        if isinstance(error, Exception):
            logger.warning("Writer for %s stopped: %s", self.url, error)

    def _drop_outbox(self) -> int:
        dropped = 0
        while not self._outbox.empty():
            self._outbox.get_nowait()
            dropped += 1
        if dropped:
            logger.warning("Dropped %d unsent frame(s) for %s", dropped, self.url)
        return dropped

    async def close(self):
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()
