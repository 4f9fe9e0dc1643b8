# core/signaling_client.py
import asyncio
import json
import logging
import re
import time
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from valentine_duel.errors import BrokerUnavailable, PeerUnreachable
from valentine_duel.game import normalize_game_code
from valentine_duel.schemas import BrokerNotice, SignalEnvelope

logger = logging.getLogger(__name__)


def _slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", name.strip())[:24] or "player"


def host_endpoint_id(prefix: str, game_code: str) -> str:
    return f"{prefix}-{normalize_game_code(game_code)}"


def guest_endpoint_id(prefix: str, game_code: str, display_name: str) -> str:
    return f"{prefix}-{normalize_game_code(game_code)}-{_slug(display_name)}-{int(time.time() * 1000)}"


class BrokerChannel:
    """A relayed signaling conversation with one remote endpoint.

    Iterating yields ``(action, payload)`` tuples until the remote leaves or the
    local endpoint is torn down.
    """

    def __init__(self, client: "SignalingClient", remote_id: str, metadata: Optional[Dict[str, Any]] = None):
        self._client = client
        self.remote_id = remote_id
        self.metadata = metadata or {}
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def send(self, action: str, payload: Optional[Dict[str, Any]] = None):
        if self.closed:
            return
        await self._client.send_signal(self.remote_id, action, payload)

    def _deliver(self, action: str, payload: Optional[Dict[str, Any]]):
        if not self.closed:
            self._queue.put_nowait((action, payload))

    def _close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def close(self):
        if not self.closed:
            await self._client.send_signal(self.remote_id, "leave")
        self._client._forget(self.remote_id)
        self._close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class SignalingClient:
    """Registers a local endpoint with the rendezvous service and relays signaling through it."""

    def __init__(
        self,
        server_url: str,
        endpoint_prefix: str = "valentine",
        open_timeout: float = 10.0,
        connect_timeout: float = 15.0,
    ):
        self.server_url = server_url
        self.endpoint_prefix = endpoint_prefix
        self.open_timeout = open_timeout
        self.connect_timeout = connect_timeout
        self.ws = None
        self.endpoint_id: Optional[str] = None
        self.game_code: Optional[str] = None
        self._is_connected = False
        self._listen_task: Optional[asyncio.Task] = None
        self._channels: Dict[str, BrokerChannel] = {}
        self._pending_connects: Dict[str, asyncio.Future] = {}
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def register(self, game_code: str, display_name: str, is_host: bool) -> str:
        """Registers under an id scoped by the game code. Re-registering the same code reuses the endpoint."""
        code = normalize_game_code(game_code)
        if self.ws is not None and self.game_code == code:
            return self.endpoint_id
        if self.ws is not None:
            logger.info(f"[Signaling] Re-registering for game {code}; releasing {self.endpoint_id}")
            await self.teardown()

        if is_host:
            endpoint_id = host_endpoint_id(self.endpoint_prefix, code)
        else:
            endpoint_id = guest_endpoint_id(self.endpoint_prefix, code, display_name)
        url = f"{self.server_url.rstrip('/')}/{quote(endpoint_id)}"
        logger.info(f"[Signaling] Connecting to {url}")

        try:
            ws = await websockets.connect(url, open_timeout=self.open_timeout)
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as e:
            logger.warning(f"[Signaling] ❌ Connection failed: {e}")
            raise BrokerUnavailable(f"The rendezvous service at {self.server_url} is unreachable.") from e

        try:
            notice = BrokerNotice.model_validate_json(await asyncio.wait_for(ws.recv(), self.open_timeout))
        except (ConnectionClosed, asyncio.TimeoutError, ValidationError) as e:
            await ws.close()
            raise BrokerUnavailable("The rendezvous service did not confirm the registration.") from e
        if notice.type != "open":
            await ws.close()
            raise BrokerUnavailable(f"The rendezvous service refused {endpoint_id}: {notice.reason}")

        self.ws = ws
        self.endpoint_id = endpoint_id
        self.game_code = code
        self._is_connected = True
        self._incoming = asyncio.Queue()
        self._listen_task = asyncio.create_task(self.listen())
        logger.info(f"[Signaling] ✅ Registered as {endpoint_id}")
        return endpoint_id

    async def await_incoming_connection(self) -> AsyncIterator[BrokerChannel]:
        """Yields one channel per guest asking to join. Ends only when the endpoint is torn down."""
        queue = self._incoming
        while True:
            channel = await queue.get()
            if channel is None:
                return
            yield channel

    async def connect(self, remote_id: str, display_name: str) -> BrokerChannel:
        if not self.is_connected:
            raise BrokerUnavailable("Not registered with the rendezvous service.")
        channel = BrokerChannel(self, remote_id)
        self._channels[remote_id] = channel
        accepted = asyncio.get_running_loop().create_future()
        self._pending_connects[remote_id] = accepted

        await self.send_signal(remote_id, "connect", {"name": display_name})
        try:
            channel.metadata = await asyncio.wait_for(accepted, self.connect_timeout)
        except asyncio.TimeoutError as e:
            self._forget(remote_id)
            channel._close()
            raise PeerUnreachable(f"No game is waiting under {remote_id}. Check the code and try again.") from e
        except PeerUnreachable:
            self._forget(remote_id)
            channel._close()
            raise
        finally:
            self._pending_connects.pop(remote_id, None)
        logger.info(f"[Signaling] 🤝 Connected to {remote_id}")
        return channel

    async def send_signal(self, to: str, action: str, payload: Optional[Dict[str, Any]] = None):
        if not self.ws or not self.is_connected:
            logger.warning(f"[Signaling] ⚠️ Dropping '{action}' for {to}: not connected")
            return
        envelope = SignalEnvelope(to=to, action=action, payload=payload)
        try:
            await self.ws.send(envelope.to_wire())
        except ConnectionClosed:
            self._is_connected = False
            logger.warning("[Signaling] ⚠️ Attempted to send on a closed connection.")

    async def listen(self):
        """Routes broker messages to channels until the connection closes."""
        ws = self.ws
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("[Signaling] ⚠️ Received non-JSON message.")
                    continue
                await self._route(data)
        except ConnectionClosed:
            logger.info("[Signaling] 🔌 Connection closed.")
        finally:
            if self.ws is ws:
                self._is_connected = False
                self._drop_channels()

    async def _route(self, data: dict):
        if data.get("type") == "error":
            reason, target = data.get("reason"), data.get("to")
            logger.warning(f"[Signaling] ⚠️ Broker error '{reason}' for {target}")
            if reason == "peer-unavailable" and target:
                pending = self._pending_connects.get(target)
                if pending and not pending.done():
                    pending.set_exception(PeerUnreachable(f"{target} is not reachable."))
                channel = self._channels.pop(target, None)
                if channel:
                    channel._close()
            return
        if data.get("type") != "signal":
            logger.debug(f"[Signaling] ignoring {data.get('type')!r} message")
            return

        try:
            envelope = SignalEnvelope.model_validate(data)
        except ValidationError:
            logger.warning("[Signaling] ⚠️ Malformed signal envelope dropped")
            return
        sender, action = envelope.sender, envelope.action
        if not sender:
            return

        if action == "connect":
            if sender in self._channels:
                return
            channel = BrokerChannel(self, sender, envelope.payload or {})
            self._channels[sender] = channel
            await self.send_signal(sender, "accept")
            logger.info(f"[Signaling] 👋 {sender} wants to join")
            self._incoming.put_nowait(channel)
        elif action == "accept":
            pending = self._pending_connects.get(sender)
            if pending and not pending.done():
                pending.set_result(envelope.payload or {})
        elif action == "leave":
            channel = self._channels.pop(sender, None)
            if channel:
                channel._close()
        else:
            channel = self._channels.get(sender)
            if channel:
                channel._deliver(action, envelope.payload)
            else:
                logger.debug(f"[Signaling] '{action}' from unknown endpoint {sender}")

    def _forget(self, remote_id: str):
        self._channels.pop(remote_id, None)

    def _drop_channels(self):
        for channel in list(self._channels.values()):
            channel._close()
        self._channels.clear()
        for pending in self._pending_connects.values():
            if not pending.done():
                pending.set_exception(BrokerUnavailable("Lost the rendezvous service."))
        self._pending_connects.clear()

    async def teardown(self):
        """Releases the endpoint. Safe to call repeatedly and on every exit path."""
        ws, self.ws = self.ws, None
        if ws is None:
            return
        try:
            for remote_id in list(self._channels):
                try:
                    await ws.send(SignalEnvelope(to=remote_id, action="leave").to_wire())
                except ConnectionClosed:
                    break
        finally:
            self._is_connected = False
            self._drop_channels()
            self._incoming.put_nowait(None)

            task, self._listen_task = self._listen_task, None
            if task and not task.done():
                task.cancel()
            await ws.close()
            logger.info(f"[Signaling] Released endpoint {self.endpoint_id}")
            self.endpoint_id = None
            self.game_code = None
