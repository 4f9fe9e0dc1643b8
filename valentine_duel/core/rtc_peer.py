# core/rtc_peer.py
import asyncio
import enum
import logging
from typing import Callable, List, Optional, Union

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from valentine_duel.errors import (
    InvalidDescriptor,
    NegotiationTimeout,
    PeerSessionError,
    PeerUnreachable,
    TransportClosed,
)
from valentine_duel.schemas import ExchangeBlob, IceCandidatePayload, SessionDescriptionPayload

logger = logging.getLogger(__name__)


class NegotiationState(str, enum.Enum):
    NEW = "new"
    OFFER_CREATED = "offer_created"
    AWAITING_REMOTE = "awaiting_remote"
    ANSWER_CREATED = "answer_created"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({NegotiationState.CLOSED, NegotiationState.FAILED})

_FORWARD = {
    NegotiationState.NEW: {NegotiationState.OFFER_CREATED, NegotiationState.ANSWER_CREATED},
    NegotiationState.OFFER_CREATED: {NegotiationState.AWAITING_REMOTE},
    NegotiationState.AWAITING_REMOTE: {NegotiationState.NEGOTIATING},
    NegotiationState.ANSWER_CREATED: {NegotiationState.NEGOTIATING},
    NegotiationState.NEGOTIATING: {NegotiationState.OPEN},
    NegotiationState.OPEN: set(),
}


def build_ice_config(urls: List[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=list(urls))] if urls else [])


def candidates_in_sdp(sdp: str) -> List[IceCandidatePayload]:
    """Pulls the a=candidate lines out of an SDP, tagged with their media section."""
    sections = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "candidates": []})
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[len("a="):])

    found = []
    for index, section in enumerate(sections):
        for text in section["candidates"]:
            found.append(IceCandidatePayload(candidate=text, sdpMid=section["mid"], sdpMLineIndex=index))
    return found


def candidate_from_payload(payload: IceCandidatePayload) -> RTCIceCandidate:
    text = payload.candidate
    if text.startswith("candidate:"):
        text = text.split(":", 1)[1]
    try:
        candidate = candidate_from_sdp(text)
    except (AssertionError, ValueError, IndexError) as e:
        raise InvalidDescriptor(f"Unreadable ICE candidate: {payload.candidate[:60]!r}") from e
    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
        candidate.sdpMLineIndex = 0
    return candidate


def payload_from_candidate(candidate: RTCIceCandidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=f"candidate:{candidate_to_sdp(candidate)}",
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    )


class PeerNegotiator:
    """Drives one RTCPeerConnection through offer/answer/ICE until the game channel opens.

    The host creates the data channel and the offer; the guest applies the offer and
    answers. Remote candidates that arrive before the remote description are buffered
    and applied once it is set. Local candidates are reported through
    ``on_local_candidate`` as they are discovered. A single timer bounds the whole
    attempt; when it fires the negotiator moves to FAILED and releases the connection.
    """

    def __init__(
        self,
        role: str,
        ice_servers: List[str],
        timeout: float,
        on_state_change: Optional[Callable] = None,
        on_local_candidate: Optional[Callable] = None,
        on_open: Optional[Callable] = None,
        on_failed: Optional[Callable] = None,
        on_closed: Optional[Callable] = None,
        pc_factory: Optional[Callable] = None,
        call_later: Optional[Callable] = None,
        channel_label: str = "game",
    ):
        if role not in ("host", "guest"):
            raise ValueError(f"unknown role {role!r}")
        self.role = role
        self.timeout = timeout
        self.channel_label = channel_label
        self.ice_config = build_ice_config(ice_servers)

        self.on_state_change = on_state_change
        self.on_local_candidate = on_local_candidate
        self.on_open = on_open
        self.on_failed = on_failed
        self.on_closed = on_closed
        self._pc_factory = pc_factory or RTCPeerConnection
        self._call_later = call_later

        self.state = NegotiationState.NEW
        self.error: Optional[PeerSessionError] = None
        self.pc = None
        self.channel = None
        self.local_candidates: List[IceCandidatePayload] = []
        self._pending_remote: List[RTCIceCandidate] = []
        self._remote_applied = False
        self._open_pending = False
        self._timer = None
        self._release_task: Optional[asyncio.Task] = None

    # --- state ---
    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def pending_remote_candidates(self) -> int:
        return len(self._pending_remote)

    def _set_state(self, new_state: NegotiationState):
        if new_state == self.state:
            return
        if new_state not in TERMINAL_STATES and new_state not in _FORWARD.get(self.state, set()):
            raise RuntimeError(f"illegal transition {self.state.value} -> {new_state.value}")
        logger.info(f"[pc:{self.role}] state {self.state.value} -> {new_state.value}")
        self.state = new_state
        if self.on_state_change:
            self.on_state_change(new_state)

    def _check_alive(self):
        if self.is_terminal:
            raise self.error or TransportClosed("The connection attempt was cancelled.")

    # --- timer ---
    def start_timer(self):
        """Starts the attempt deadline. Later calls keep the first deadline."""
        if self._timer is not None or self.is_terminal:
            return
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timer = call_later(self.timeout, self._expire)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self):
        self._timer = None
        if self.is_terminal or self.state == NegotiationState.OPEN:
            return
        self.fail(NegotiationTimeout(
            f"No connection after {self.timeout:.0f}s. Start a new game and share the new code."
        ))

    # --- peer connection ---
    def _create_pc(self):
        pc = self._pc_factory(configuration=self.ice_config)
        self.pc = pc

        @pc.on("icecandidate")
        def on_icecandidate(candidate):
            # aiortc bundles candidates into the SDP; other stacks trickle them here.
            if candidate is not None and not self.is_terminal:
                self._add_local_candidate(payload_from_candidate(candidate))

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"[pc:{self.role}] 📡 DataChannel '{channel.label}' from peer")
            self._bind_channel(channel)

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            logger.info(f"[pc:{self.role}] connectionState -> {pc.connectionState}")
            if pc.connectionState != "failed" or self.is_terminal:
                return
            if self.state == NegotiationState.OPEN:
                self._transport_lost()
            else:
                self.fail(PeerUnreachable("No network path to your friend could be found."))

        return pc

    def _bind_channel(self, channel):
        self.channel = channel

        @channel.on("open")
        def on_open():
            self._channel_opened()

        @channel.on("close")
        def on_close():
            if self.state == NegotiationState.OPEN:
                self._transport_lost()
            elif not self.is_terminal:
                self.fail(TransportClosed("The game channel closed before it opened."))

        if channel.readyState == "open":
            self._channel_opened()

    def _channel_opened(self):
        if self.state in (NegotiationState.ANSWER_CREATED, NegotiationState.AWAITING_REMOTE):
            self._open_pending = True
            return
        if self.state != NegotiationState.NEGOTIATING:
            return
        self._cancel_timer()
        self._set_state(NegotiationState.OPEN)
        if self.on_open:
            self.on_open(self.channel)

    def _transport_lost(self):
        self._set_state(NegotiationState.CLOSED)
        self._start_release()
        if self.on_closed:
            self.on_closed(TransportClosed("Your opponent left the game."))

    # --- candidates ---
    def _add_local_candidate(self, payload: IceCandidatePayload):
        if any(c.candidate == payload.candidate for c in self.local_candidates):
            return
        self.local_candidates.append(payload)
        if self.on_local_candidate:
            self.on_local_candidate(payload)

    def _harvest_local_candidates(self):
        for payload in candidates_in_sdp(self.pc.localDescription.sdp):
            self._add_local_candidate(payload)

    async def add_remote_candidate(self, payload: IceCandidatePayload):
        """Applies a peer candidate, or buffers it until the remote description is set."""
        candidate = candidate_from_payload(payload)
        if self.is_terminal:
            logger.debug(f"[pc:{self.role}] dropping candidate after {self.state.value}")
            return
        if not self._remote_applied:
            self._pending_remote.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: RTCIceCandidate):
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            # Late or duplicate candidates are expected once ICE has completed.
            logger.debug(f"[pc:{self.role}] candidate not applied: {e}")

    async def _flush_remote_candidates(self):
        pending, self._pending_remote = self._pending_remote, []
        for candidate in pending:
            if self.is_terminal:
                return
            await self._apply_candidate(candidate)

    async def _set_remote(self, description: SessionDescriptionPayload):
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        except Exception as e:
            if description.type == "answer":
                error = InvalidDescriptor("The answer could not be applied. Start a new game and share the new offer.")
            else:
                error = InvalidDescriptor("The offer could not be applied. Ask your friend for a fresh offer.")
            logger.warning(f"[pc:{self.role}] ⚠️ setRemoteDescription failed: {e}")
            self.fail(error)
            raise error from e
        self._check_alive()
        self._remote_applied = True

    async def _enter_negotiating(self, description: Union[SessionDescriptionPayload, ExchangeBlob]):
        self._set_state(NegotiationState.NEGOTIATING)
        for payload in getattr(description, "candidates", []):
            await self.add_remote_candidate(payload)
        await self._flush_remote_candidates()
        if self._open_pending:
            self._open_pending = False
            self._channel_opened()

    # --- offer / answer ---
    async def create_offer(self) -> ExchangeBlob:
        if self.role != "host" or self.state != NegotiationState.NEW:
            raise RuntimeError(f"cannot create an offer as {self.role} in state {self.state.value}")
        pc = self._create_pc()
        self._bind_channel(pc.createDataChannel(self.channel_label, ordered=True))
        self.start_timer()
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            error = PeerUnreachable(f"Could not prepare a connection offer: {e}")
            self.fail(error)
            raise error from e
        self._check_alive()
        self._set_state(NegotiationState.OFFER_CREATED)
        self._harvest_local_candidates()
        self._set_state(NegotiationState.AWAITING_REMOTE)
        return self.local_blob()

    async def accept_offer(self, offer: Union[SessionDescriptionPayload, ExchangeBlob]) -> ExchangeBlob:
        self._check_alive()
        if self.role != "guest" or self.state != NegotiationState.NEW:
            raise InvalidDescriptor(f"Not expecting an offer in state {self.state.value}.")
        if offer.type != "offer":
            raise InvalidDescriptor(f"Expected an OFFER but got an {offer.type.upper()}.")
        pc = self._create_pc()
        self.start_timer()
        await self._set_remote(offer)
        try:
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            error = InvalidDescriptor(f"Could not answer that offer: {e}")
            self.fail(error)
            raise error from e
        self._check_alive()
        self._set_state(NegotiationState.ANSWER_CREATED)
        self._harvest_local_candidates()
        await self._enter_negotiating(offer)
        return self.local_blob()

    async def apply_answer(self, answer: Union[SessionDescriptionPayload, ExchangeBlob]):
        self._check_alive()
        if self.state != NegotiationState.AWAITING_REMOTE:
            raise InvalidDescriptor(f"Not expecting an answer in state {self.state.value}.")
        if answer.type != "answer":
            raise InvalidDescriptor(f"Expected an ANSWER but got an {answer.type.upper()}.")
        await self._set_remote(answer)
        await self._enter_negotiating(answer)

    def local_blob(self) -> ExchangeBlob:
        description = self.pc.localDescription
        return ExchangeBlob(type=description.type, sdp=description.sdp, candidates=list(self.local_candidates))

    # --- teardown ---
    def fail(self, error: PeerSessionError):
        """Moves to FAILED (terminal), releases the connection and reports the error once."""
        if self.is_terminal:
            return
        logger.warning(f"[pc:{self.role}] ❌ negotiation failed: {error}")
        self.error = error
        self._cancel_timer()
        self._pending_remote.clear()
        self._set_state(NegotiationState.FAILED)
        self._start_release()
        if self.on_failed:
            self.on_failed(error)

    def _start_release(self):
        if self._release_task is None and self.pc is not None:
            self._release_task = asyncio.ensure_future(self._release())

    async def _release(self):
        pc, self.pc = self.pc, None
        if pc is None:
            return
        try:
            await pc.close()
        except Exception as e:
            logger.warning(f"[pc:{self.role}] ⚠️ error while closing peer connection: {e}")

    async def close(self):
        """Abandons or ends the connection. Safe to call any number of times."""
        self._cancel_timer()
        self._pending_remote.clear()
        if not self.is_terminal:
            self._set_state(NegotiationState.CLOSED)
        self._start_release()
        if self._release_task is not None:
            await self._release_task


__all__ = ["NegotiationState", "PeerNegotiator", "TERMINAL_STATES", "candidates_in_sdp"]
