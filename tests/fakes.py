"""In-memory stand-ins for aiortc peer connections, data channels and the loop clock."""

import asyncio
import itertools
import re

from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label="game", readyState="connecting"):
        super().__init__()
        self.label = label
        self.readyState = readyState
        self.peer = None
        self.sent = []

    def send(self, data):
        if self.readyState != "open":
            raise RuntimeError("RTCDataChannel is not open")
        self.sent.append(data)
        asyncio.get_running_loop().call_soon(self.peer._receive, data)

    def _receive(self, data):
        if self.readyState == "open":
            self.emit("message", data)

    def _open(self):
        self.readyState = "open"
        self.emit("open")

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer._remote_closed)

    def _remote_closed(self):
        if self.readyState != "closed":
            self.readyState = "closed"
            self.emit("close")


def linked_channels(label="game"):
    a, b = FakeDataChannel(label, "open"), FakeDataChannel(label, "open")
    a.peer, b.peer = b, a
    return a, b


class FakeTrack(AsyncIOEventEmitter):
    def __init__(self, kind="audio"):
        super().__init__()
        self.kind = kind


class FakeNetwork:
    """Links fake peer connections by the id carried in their SDP origin line.

    A pair connects only once both sides hold local and remote descriptions and
    each has been given at least one remote candidate.
    """

    def __init__(self, with_candidates=True):
        self.with_candidates = with_candidates
        self.close_delay = 0
        self.peers = {}
        self._ids = itertools.count(1)

    def factory(self, configuration=None):
        return FakePeerConnection(self, configuration)

    def register(self, pc):
        pc_id = next(self._ids)
        self.peers[pc_id] = pc
        return pc_id

    def connect(self, a, b):
        owner, other = (a, b) if a.created_channel is not None else (b, a)
        for pc in (a, b):
            pc.connectionState = "connected"
            pc.emit("connectionstatechange")
        if owner.created_channel is None:
            return
        local = owner.created_channel
        remote = FakeDataChannel(local.label, "open")
        local.peer, remote.peer = remote, local
        other.channels.append(remote)
        other.emit("datachannel", remote)
        local._open()


class FakePeerConnection(AsyncIOEventEmitter):
    def __init__(self, network, configuration=None):
        super().__init__()
        self.network = network
        self.configuration = configuration
        self.id = network.register(self)
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.created_channel = None
        self.channels = []
        self.tracks = []
        self.recvonly = False
        self.added_candidates = []
        self.close_calls = 0
        self.remote = None
        self._connected = False

    # --- media ---
    def createDataChannel(self, label, ordered=True):
        self.created_channel = FakeDataChannel(label)
        self.channels.append(self.created_channel)
        return self.created_channel

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction="sendrecv"):
        self.recvonly = True

    def emit_candidate(self, candidate):
        self.emit("icecandidate", candidate)

    # --- descriptions ---
    def _candidate_lines(self):
        if not self.network.with_candidates:
            return []
        return [f"a=candidate:{self.id} 1 udp 2130706431 10.0.0.{self.id} {50000 + self.id} typ host"]

    def _sdp(self):
        lines = ["v=0", f"o=- {self.id} 1 IN IP4 0.0.0.0", "s=-", "t=0 0"]
        remote_sdp = self.remoteDescription.sdp if self.remoteDescription else ""
        mid = 0
        if self.created_channel is not None or "m=application" in remote_sdp:
            lines += ["m=application 9 UDP/DTLS/SCTP webrtc-datachannel", f"a=mid:{mid}"]
            lines += self._candidate_lines()
            mid += 1
        if self.tracks or self.recvonly:
            lines += ["m=audio 9 UDP/TLS/RTP/SAVPF 111", f"a=mid:{mid}"]
            lines.append("a=sendrecv" if self.tracks else "a=recvonly")
            lines += self._candidate_lines()
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        return RTCSessionDescription(sdp=self._sdp(), type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise RuntimeError("no remote offer")
        return RTCSessionDescription(sdp=self._sdp(), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        match = re.search(r"^o=- (\d+) ", description.sdp, re.MULTILINE)
        if match is None or int(match.group(1)) not in self.network.peers:
            raise ValueError("malformed SDP")
        self.remote = self.network.peers[int(match.group(1))]
        self.remoteDescription = description
        if "m=audio" in description.sdp and "a=sendrecv" in description.sdp:
            self.emit("track", FakeTrack("audio"))
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("remote description not set")
        self.added_candidates.append(candidate)
        self._maybe_connect()

    def _maybe_connect(self):
        other = self.remote
        if self._connected or other is None or other.remote is not self:
            return
        if None in (self.localDescription, self.remoteDescription, other.localDescription, other.remoteDescription):
            return
        if not self.added_candidates or not other.added_candidates:
            return
        self._connected = other._connected = True
        self.network.connect(self, other)

    async def close(self):
        self.close_calls += 1
        if self.network.close_delay:
            await asyncio.sleep(self.network.close_delay)
        if self.connectionState == "closed":
            return
        self.connectionState = "closed"
        for channel in self.channels:
            channel.close()


class FakeTimer:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.timers = []
        self.fired = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds):
        self.now += seconds
        due = [t for t in self.pending if t.when <= self.now]
        self.timers = [t for t in self.pending if t.when > self.now]
        for timer in due:
            self.fired.append(timer)
            timer.callback(*timer.args)


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)
