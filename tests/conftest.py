from dataclasses import dataclass
from urllib.parse import unquote

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from tests.fakes import FakeClock, FakeNetwork
from valentine_duel.config import Settings
from valentine_duel.server.socket_main import RendezvousRegistry


@dataclass
class Rendezvous:
    url: str
    registry: RendezvousRegistry


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def rendezvous():
    """The rendezvous registry served over real websockets on a free local port."""
    registry = RendezvousRegistry()

    async def handler(ws):
        endpoint_id = unquote(ws.request.path.rsplit("/", 1)[-1])
        send = ws.send
        if not await registry.open_endpoint(endpoint_id, send):
            await ws.close(code=4409)
            return
        try:
            async for raw in ws:
                await registry.route(endpoint_id, raw)
        except ConnectionClosed:
            pass
        finally:
            registry.close_endpoint(endpoint_id, send)

    async with serve(handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield Rendezvous(f"ws://127.0.0.1:{port}/peers", registry)


@pytest.fixture
def settings(rendezvous):
    return Settings(
        broker_url=rendezvous.url,
        ice_servers=[],
        broker_open_timeout=2,
        connect_timeout=2,
        voice_enabled=False,
    )
