# server/socket_main.py
import json
import logging
from typing import Awaitable, Callable, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from valentine_duel.schemas import BrokerNotice, SignalEnvelope

logger = logging.getLogger(__name__)

router = APIRouter()

Sender = Callable[[str], Awaitable[None]]


class RendezvousRegistry:
    """Endpoint name -> sender. Relays signal envelopes; keeps no game state."""

    def __init__(self):
        self.endpoints: Dict[str, Sender] = {}

    async def open_endpoint(self, endpoint_id: str, send: Sender) -> bool:
        if endpoint_id in self.endpoints:
            await safe_send(send, BrokerNotice(type="error", reason="id-taken", id=endpoint_id).model_dump_json())
            return False
        self.endpoints[endpoint_id] = send
        await safe_send(send, BrokerNotice(type="open", id=endpoint_id).model_dump_json())
        logger.info(f"[rendezvous] ✅ {endpoint_id} registered ({len(self.endpoints)} online)")
        return True

    def close_endpoint(self, endpoint_id: str, send: Sender):
        if self.endpoints.get(endpoint_id) is send:
            self.endpoints.pop(endpoint_id, None)
            logger.info(f"[rendezvous] ❌ {endpoint_id} released")

    async def route(self, sender_id: str, raw: str):
        try:
            envelope = SignalEnvelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.warning(f"[rendezvous] ⚠️ Dropping malformed message from {sender_id}")
            return
        envelope.sender = sender_id

        target = self.endpoints.get(envelope.to)
        if target is None:
            reply = self.endpoints.get(sender_id)
            if reply is not None:
                notice = BrokerNotice(type="error", reason="peer-unavailable", to=envelope.to)
                await safe_send(reply, notice.model_dump_json(exclude_none=True))
            return
        await safe_send(target, envelope.to_wire())


async def safe_send(send: Sender, text: str):
    """Send a message safely (ignore disconnected sockets)."""
    try:
        await send(text)
    except Exception as e:
        logger.debug(f"[rendezvous] send failed: {e}")


# ---------- WebSocket endpoint ----------

@router.websocket("/peers/{endpoint_id}")
async def peer_endpoint(websocket: WebSocket, endpoint_id: str):
    registry: RendezvousRegistry = websocket.app.state.registry
    await websocket.accept()
    send = websocket.send_text

    if not await registry.open_endpoint(endpoint_id, send):
        await websocket.close(code=4409)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            await registry.route(endpoint_id, raw)
    except WebSocketDisconnect:
        logger.info(f"[rendezvous] 🔌 {endpoint_id} disconnected")
    finally:
        registry.close_endpoint(endpoint_id, send)
