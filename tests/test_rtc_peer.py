import pytest
from aiortc import RTCIceCandidate

from tests.fakes import FakeNetwork, settle
from valentine_duel.core.rtc_peer import (
    NegotiationState,
    PeerNegotiator,
    candidate_from_payload,
    candidates_in_sdp,
    payload_from_candidate,
)
from valentine_duel.errors import InvalidDescriptor, NegotiationTimeout, TransportClosed
from valentine_duel.schemas import IceCandidatePayload, SessionDescriptionPayload, parse_exchange_blob

S = NegotiationState

SDP = "\r\n".join([
    "v=0",
    "o=- 1 1 IN IP4 0.0.0.0",
    "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
    "a=mid:0",
    "a=candidate:1 1 udp 2130706431 10.0.0.1 50001 typ host",
    "m=audio 9 UDP/TLS/RTP/SAVPF 111",
    "a=mid:audio",
    "a=candidate:2 1 udp 1694498815 203.0.113.7 40000 typ srflx raddr 10.0.0.1 rport 50001",
    "",
])


class Recorder:
    def __init__(self):
        self.states = []
        self.local = []
        self.opened = []
        self.failed = []
        self.closed = []

    def kwargs(self):
        return dict(
            on_state_change=self.states.append,
            on_local_candidate=self.local.append,
            on_open=self.opened.append,
            on_failed=self.failed.append,
            on_closed=self.closed.append,
        )


def make_pair(network, clock, timeout=30):
    host_events, guest_events = Recorder(), Recorder()
    host = PeerNegotiator("host", [], timeout, pc_factory=network.factory, call_later=clock.call_later,
                          **host_events.kwargs())
    guest = PeerNegotiator("guest", [], timeout, pc_factory=network.factory, call_later=clock.call_later,
                           **guest_events.kwargs())
    return host, host_events, guest, guest_events


def test_candidates_are_read_from_each_media_section():
    found = candidates_in_sdp(SDP)
    assert [(c.sdpMid, c.sdpMLineIndex) for c in found] == [("0", 0), ("audio", 1)]
    assert found[0].candidate.startswith("candidate:1 1 udp")


def test_candidate_payload_conversion():
    candidate = candidate_from_payload(IceCandidatePayload(candidate="candidate:7 1 udp 99 10.1.1.1 7000 typ host"))
    assert (candidate.ip, candidate.port, candidate.type) == ("10.1.1.1", 7000, "host")
    assert candidate.sdpMLineIndex == 0
    assert payload_from_candidate(candidate).candidate == "candidate:7 1 udp 99 10.1.1.1 7000 typ host"

    with pytest.raises(InvalidDescriptor):
        candidate_from_payload(IceCandidatePayload(candidate="candidate:garbage"))


@pytest.mark.asyncio
async def test_host_and_guest_reach_open(network, clock):
    host, host_events, guest, guest_events = make_pair(network, clock)

    offer = await host.create_offer()
    assert offer.type == "offer" and len(offer.candidates) == 1
    answer = await guest.accept_offer(offer)
    await host.apply_answer(answer)

    assert host.state == guest.state == S.OPEN
    assert host_events.states == [S.OFFER_CREATED, S.AWAITING_REMOTE, S.NEGOTIATING, S.OPEN]
    assert guest_events.states == [S.ANSWER_CREATED, S.NEGOTIATING, S.OPEN]
    assert host_events.opened == [host.channel]
    assert guest_events.opened == [guest.channel]
    assert host_events.local == offer.candidates
    assert clock.pending == []


@pytest.mark.asyncio
async def test_pasted_text_round_trip_opens_the_connection(network, clock):
    host, _, guest, _ = make_pair(network, clock)

    offer_text = (await host.create_offer()).to_text()
    answer_text = (await guest.accept_offer(parse_exchange_blob(offer_text, expected="offer"))).to_text()
    await host.apply_answer(parse_exchange_blob(answer_text, expected="answer"))

    assert host.state == guest.state == S.OPEN


@pytest.mark.asyncio
async def test_candidates_before_description_are_buffered_then_applied(network, clock):
    host, _, guest, _ = make_pair(network, clock)
    offer = await host.create_offer()

    for candidate in offer.candidates:
        await guest.add_remote_candidate(candidate)
    assert guest.pending_remote_candidates == 1

    answer = await guest.accept_offer(offer.description)
    assert guest.pending_remote_candidates == 0
    assert [c.ip for c in guest.pc.added_candidates] == [f"10.0.0.{host.pc.id}"]

    for candidate in answer.candidates:
        await host.add_remote_candidate(candidate)
    assert host.pending_remote_candidates == 1
    assert host.state == S.AWAITING_REMOTE

    await host.apply_answer(answer.description)
    assert host.pending_remote_candidates == 0
    assert host.state == guest.state == S.OPEN


@pytest.mark.asyncio
async def test_trickled_local_candidates_are_reported_once(network, clock):
    host, host_events, _, _ = make_pair(network, clock)
    await host.create_offer()
    late = RTCIceCandidate(component=1, foundation="7", ip="10.0.0.77", port=7777, priority=1,
                           protocol="udp", type="host", sdpMid="0", sdpMLineIndex=0)

    host.pc.emit_candidate(late)
    host.pc.emit_candidate(late)
    host.pc.emit_candidate(None)

    assert [c.candidate for c in host_events.local][-1] == "candidate:7 1 udp 1 10.0.0.77 7777 typ host"
    assert len(host_events.local) == 2


@pytest.mark.asyncio
async def test_unusable_offer_fails_the_attempt(network, clock):
    _, _, guest, guest_events = make_pair(network, clock)
    with pytest.raises(InvalidDescriptor):
        await guest.accept_offer(SessionDescriptionPayload(type="offer", sdp="garbage"))
    pc = network.peers[1]
    await settle()

    assert guest.state == S.FAILED
    assert len(guest_events.failed) == 1
    assert pc.close_calls == 1
    assert clock.pending == []


@pytest.mark.asyncio
async def test_answers_after_a_failed_answer_repeat_the_failure(network, clock):
    host, host_events, guest, _ = make_pair(network, clock)
    offer = await host.create_offer()
    with pytest.raises(InvalidDescriptor):
        await host.apply_answer(SessionDescriptionPayload(type="answer", sdp="garbage"))
    answer = await guest.accept_offer(offer)

    with pytest.raises(InvalidDescriptor) as excinfo:
        await host.apply_answer(answer)
    assert excinfo.value is host.error
    assert "Not expecting" not in str(excinfo.value)
    assert host.state == S.FAILED
    assert len(host_events.failed) == 1


@pytest.mark.asyncio
async def test_answer_is_rejected_as_an_offer(network, clock):
    _, _, guest, guest_events = make_pair(network, clock)
    with pytest.raises(InvalidDescriptor):
        await guest.accept_offer(SessionDescriptionPayload(type="answer", sdp="v=0"))
    assert guest.state == S.NEW
    assert guest_events.failed == []


@pytest.mark.asyncio
async def test_timeout_fails_once_and_releases_everything(clock):
    network = FakeNetwork(with_candidates=False)
    host, host_events, guest, guest_events = make_pair(network, clock, timeout=30)

    offer = await host.create_offer()
    answer = await guest.accept_offer(offer)
    await host.apply_answer(answer)
    assert host.state == guest.state == S.NEGOTIATING
    pcs = list(network.peers.values())

    clock.advance(29)
    assert host.state == S.NEGOTIATING
    clock.advance(1)
    await settle()

    for negotiator, events in ((host, host_events), (guest, guest_events)):
        assert negotiator.state == S.FAILED
        assert events.states[-1] == S.FAILED
        assert len(events.failed) == 1
        assert isinstance(events.failed[0], NegotiationTimeout)
        assert events.opened == []
    assert [pc.close_calls for pc in pcs] == [1, 1]

    fired = len(clock.fired)
    clock.advance(1000)
    await settle()
    assert len(clock.fired) == fired
    assert host_events.states[-1] == S.FAILED


@pytest.mark.asyncio
async def test_close_is_idempotent_and_the_opponent_sees_it(network, clock):
    host, host_events, guest, guest_events = make_pair(network, clock)
    await host.apply_answer(await guest.accept_offer(await host.create_offer()))
    host_pc = host.pc

    await host.close()
    await host.close()
    await settle()

    assert host.state == S.CLOSED
    assert host_pc.close_calls == 1
    assert host_events.closed == []
    assert guest.state == S.CLOSED
    assert len(guest_events.closed) == 1
    assert isinstance(guest_events.closed[0], TransportClosed)


@pytest.mark.asyncio
async def test_closing_before_any_offer_is_harmless(network, clock):
    host, host_events, _, _ = make_pair(network, clock)
    await host.close()
    await host.close()
    assert host.state == S.CLOSED
    assert host_events.states == [S.CLOSED]
    assert network.peers == {}


@pytest.mark.asyncio
async def test_late_candidate_after_open_is_not_an_error(network, clock):
    host, host_events, guest, _ = make_pair(network, clock)
    await host.apply_answer(await guest.accept_offer(await host.create_offer()))

    await host.add_remote_candidate(
        IceCandidatePayload(candidate="candidate:9 1 udp 1 10.0.0.9 9999 typ host", sdpMLineIndex=0)
    )
    assert host.state == S.OPEN
    assert host_events.failed == []


@pytest.mark.asyncio
async def test_candidates_after_failure_are_dropped(network, clock):
    host, _, _, _ = make_pair(network, clock)
    await host.create_offer()
    host.fail(NegotiationTimeout("gave up"))
    await host.add_remote_candidate(IceCandidatePayload(candidate="candidate:9 1 udp 1 10.0.0.9 9999 typ host"))
    assert host.pending_remote_candidates == 0
    assert host.state == S.FAILED
