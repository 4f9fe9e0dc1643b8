# session.py
import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Set

from pydantic import ValidationError

from valentine_duel.config import Settings
from valentine_duel.core.protocol import SessionProtocol
from valentine_duel.core.rtc_peer import TERMINAL_STATES, NegotiationState, PeerNegotiator
from valentine_duel.core.signaling_client import BrokerChannel, SignalingClient, host_endpoint_id
from valentine_duel.core.voice import VoiceLink, open_microphone
from valentine_duel.errors import (
    BrokerUnavailable,
    InvalidDescriptor,
    PeerSessionError,
    PeerUnreachable,
    TransportClosed,
)
from valentine_duel.game import GAME_CODE_ALPHABET, GAME_CODE_LENGTH, Board, generate_game_code, normalize_game_code
from valentine_duel.schemas import (
    CandidateBundle,
    IceCandidatePayload,
    PlayerInfo,
    SessionDescriptionPayload,
    VoiceAnswer,
    VoiceOffer,
    parse_candidate_bundle,
    parse_exchange_blob,
)

logger = logging.getLogger(__name__)


class StatusStream:
    """Async iterator over negotiation states. Ends after CLOSED or FAILED."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def push(self, state: NegotiationState):
        if self._done:
            return
        self._queue.put_nowait(state)
        if state in TERMINAL_STATES:
            self._done = True
            self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> NegotiationState:
        state = await self._queue.get()
        if state is None:
            raise StopAsyncIteration
        return state


@dataclass
class GameHandle:
    game_code: str
    statuses: StatusStream
    strategy: str
    exchange_text: Optional[str] = None


class GameSession:
    """One two-player game: broker registration, negotiation, protocol and voice.

    The broker is tried first; if it cannot be reached the session falls back to
    copy/paste exchange. Every resource is owned here and released by ``leave()``,
    which can be called any number of times.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[SignalingClient] = None,
        pc_factory: Optional[Callable] = None,
        call_later: Optional[Callable] = None,
        audio_source_factory: Optional[Callable] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.broker = broker or SignalingClient(
            self.settings.broker_url,
            endpoint_prefix=self.settings.endpoint_prefix,
            open_timeout=self.settings.broker_open_timeout,
            connect_timeout=self.settings.connect_timeout,
        )
        self._pc_factory = pc_factory
        self._call_later = call_later
        self._audio_source_factory = audio_source_factory or functools.partial(open_microphone, self.settings)

        self.on_player_connect: Optional[Callable] = None
        self.on_message: Optional[Callable] = None
        self.on_remote_audio_stream: Optional[Callable] = None
        self.on_state_change: Optional[Callable] = None
        self.on_game_over: Optional[Callable] = None
        self.on_error: Optional[Callable] = None

        self._reset()

    def _reset(self):
        self.role: Optional[str] = None
        self.game_code: Optional[str] = None
        self.display_name: Optional[str] = None
        self.symbol: Optional[str] = None
        self.strategy: Optional[str] = None
        self.board = Board()
        self.negotiator: Optional[PeerNegotiator] = None
        self.protocol: Optional[SessionProtocol] = None
        self.voice: Optional[VoiceLink] = None
        self.statuses: Optional[StatusStream] = None
        self.transport_closed = False
        self._broker_channel: Optional[BrokerChannel] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._tasks: Set[asyncio.Task] = set()
        self._release_task: Optional[asyncio.Task] = None

    # --- properties ---
    @property
    def state(self) -> NegotiationState:
        return self.negotiator.state if self.negotiator else NegotiationState.NEW

    @property
    def opponent(self) -> Optional[PlayerInfo]:
        return self.protocol.opponent if self.protocol else None

    @property
    def winner(self) -> Optional[str]:
        return self.protocol.winner if self.protocol else None

    @property
    def is_my_turn(self) -> bool:
        return self.protocol is not None and self.board.current_player == self.symbol

    # --- setup ---
    async def _prepare(self, role: str, display_name: str, game_code: str):
        name = (display_name or "").strip()
        if not name:
            raise ValueError("Please enter your name!")
        if self.negotiator is not None:
            if not self.negotiator.is_terminal:
                raise RuntimeError("A game is already in progress. Leave it first.")
            await self.leave()
        self._reset()
        self.role = role
        self.symbol = "X" if role == "host" else "O"
        self.display_name = name
        self.game_code = game_code
        self.statuses = StatusStream()

    def _new_negotiator(self, strategy: str) -> PeerNegotiator:
        self.strategy = strategy
        timeout = (
            self.settings.broker_negotiation_timeout if strategy == "broker"
            else self.settings.manual_negotiation_timeout
        )
        self.negotiator = PeerNegotiator(
            self.role,
            self.settings.ice_servers,
            timeout,
            on_state_change=self._state_changed,
            on_local_candidate=self._local_candidate,
            on_open=self._transport_opened,
            on_failed=self._negotiation_failed,
            on_closed=self._transport_lost,
            pc_factory=self._pc_factory,
            call_later=self._call_later,
        )
        self._state_changed(NegotiationState.NEW)
        return self.negotiator

    async def _try_register(self, is_host: bool) -> str:
        try:
            await self.broker.register(self.game_code, self.display_name, is_host)
        except BrokerUnavailable as e:
            logger.warning(f"[Session] ⚠️ {e} Falling back to manual exchange.")
            self._report(e)
            return "manual"
        return "broker"

    # --- host ---
    async def create_game(self, display_name: str, manual: bool = False) -> GameHandle:
        await self._prepare("host", display_name, generate_game_code())
        strategy = "manual" if manual else await self._try_register(is_host=True)
        negotiator = self._new_negotiator(strategy)
        logger.info(f"[Session] 🎮 Hosting game {self.game_code} ({strategy})")

        exchange_text = None
        if strategy == "broker":
            self._spawn(self._host_via_broker())
        else:
            blob = await negotiator.create_offer()
            blob.game_code = self.game_code
            exchange_text = blob.to_text()
        return GameHandle(self.game_code, self.statuses, strategy, exchange_text)

    async def accept_answer(self, answer_text: str):
        """Host, manual exchange: applies the guest's pasted ANSWER."""
        if self.negotiator is None or self.role != "host":
            raise RuntimeError("No hosted game is waiting for an answer.")
        if self.negotiator.is_terminal:
            raise self.negotiator.error or TransportClosed("This game has ended. Start a new one.")
        blob = parse_exchange_blob(answer_text, expected="answer")
        self._check_code(blob.game_code)
        await self.negotiator.apply_answer(blob)

    async def _host_via_broker(self):
        async for channel in self.broker.await_incoming_connection():
            if self._broker_channel is not None:
                logger.info(f"[Session] Turning away {channel.remote_id}: game already has two players")
                await channel.close()
                continue
            self._attach_channel(channel)
            try:
                blob = await self.negotiator.create_offer()
            except PeerSessionError:
                return
            self._queue_signal("offer", blob.description.model_dump())

    # --- guest ---
    async def join_game(self, game_code: str, display_name: str, offer_text: Optional[str] = None) -> GameHandle:
        code = normalize_game_code(game_code)
        if len(code) != GAME_CODE_LENGTH or any(c not in GAME_CODE_ALPHABET for c in code):
            raise ValueError(f"Game codes are {GAME_CODE_LENGTH} letters or digits.")
        blob = None
        if offer_text is not None:
            # Validate before anything is allocated.
            blob = parse_exchange_blob(offer_text, expected="offer")
            if blob.game_code and normalize_game_code(blob.game_code) != code:
                raise InvalidDescriptor("That offer belongs to a different game code.")

        await self._prepare("guest", display_name, code)
        if blob is not None:
            negotiator = self._new_negotiator("manual")
            answer = await negotiator.accept_offer(blob)
            answer.game_code = code
            return GameHandle(code, self.statuses, "manual", answer.to_text())

        if await self._try_register(is_host=False) == "manual":
            await self.leave()
            raise BrokerUnavailable("The rendezvous service is unreachable. Ask your friend for their OFFER text.")
        # The deadline covers the wait for the host's offer too.
        self._new_negotiator("broker").start_timer()
        try:
            channel = await self.broker.connect(host_endpoint_id(self.settings.endpoint_prefix, code), self.display_name)
        except (PeerUnreachable, BrokerUnavailable) as e:
            self.negotiator.fail(e)
            await self.leave()
            raise
        self._attach_channel(channel)
        return GameHandle(code, self.statuses, "broker")

    # --- broker relay ---
    def _attach_channel(self, channel: BrokerChannel):
        logger.info(f"[Session] 🤝 Signaling with {channel.remote_id} via broker")
        self._broker_channel = channel
        self._outbox = asyncio.Queue()
        for candidate in self.negotiator.local_candidates:
            self._queue_signal("candidate", candidate.model_dump())
        self._spawn(self._send_signals(channel, self._outbox))
        self._spawn(self._pump_signals(channel))

    def _queue_signal(self, action: str, payload: dict):
        if self._outbox is not None:
            self._outbox.put_nowait((action, payload))

    async def _send_signals(self, channel: BrokerChannel, outbox: asyncio.Queue):
        # Single sender keeps description/candidate order intact.
        while True:
            action, payload = await outbox.get()
            await channel.send(action, payload)

    async def _pump_signals(self, channel: BrokerChannel):
        negotiator = self.negotiator
        async for action, payload in channel:
            try:
                if action == "offer":
                    answer = await negotiator.accept_offer(SessionDescriptionPayload.model_validate(payload))
                    self._queue_signal("answer", answer.description.model_dump())
                elif action == "answer":
                    await negotiator.apply_answer(SessionDescriptionPayload.model_validate(payload))
                elif action == "candidate":
                    await negotiator.add_remote_candidate(IceCandidatePayload.model_validate(payload))
                else:
                    logger.debug(f"[Session] ignoring relayed '{action}'")
            except ValidationError:
                logger.warning(f"[Session] ⚠️ Malformed '{action}' relayed by {channel.remote_id}")
                self._report(InvalidDescriptor(f"Received a malformed {action} from your friend."))
            except InvalidDescriptor as e:
                self._report(e)
            if negotiator.is_terminal:
                return

        if not negotiator.is_terminal and negotiator.state != NegotiationState.OPEN:
            negotiator.fail(PeerUnreachable("Your friend left before the game connected."))

    # --- manual extras ---
    def _local_candidate(self, candidate: IceCandidatePayload):
        if self._broker_channel is not None:
            self._queue_signal("candidate", candidate.model_dump())
        elif self.strategy == "manual" and self.negotiator.state != NegotiationState.NEW:
            logger.debug("[Session] New connection candidate found; share the candidate list again if needed.")

    def local_candidates_text(self) -> str:
        candidates = self.negotiator.local_candidates if self.negotiator else []
        return CandidateBundle(candidates=candidates).to_text()

    async def add_remote_candidates(self, text: str):
        if self.negotiator is None:
            raise RuntimeError("No game in progress.")
        for candidate in parse_candidate_bundle(text).candidates:
            await self.negotiator.add_remote_candidate(candidate)

    def _check_code(self, code: Optional[str]):
        if code and normalize_game_code(code) != self.game_code:
            raise InvalidDescriptor("That answer belongs to a different game code.")

    # --- negotiator callbacks ---
    def _state_changed(self, state: NegotiationState):
        if self.statuses is not None:
            self.statuses.push(state)
        if self.on_state_change:
            self.on_state_change(state)

    def _transport_opened(self, channel):
        logger.info(f"[Session] ✅ Game channel open ({self.role})")
        self.protocol = SessionProtocol(
            channel,
            PlayerInfo(name=self.display_name, symbol=self.symbol),
            self.board,
            on_player_connect=self._player_connected,
            on_message=self._message_received,
            on_game_over=self._game_over,
            on_voice_signal=self._voice_signal,
        )
        self.protocol.start()
        if self.settings.voice_enabled:
            self.voice = VoiceLink(
                self.protocol.send,
                self.settings.ice_servers,
                self._audio_source_factory,
                pc_factory=self._pc_factory,
                on_remote_stream=self._remote_audio,
                on_error=self._report,
            )
            # Guest calls, host auto-answers.
            if self.role == "guest":
                self._spawn(self._run_voice(self.voice.start_call()))

    def _negotiation_failed(self, error: PeerSessionError):
        self._report(error)
        self._start_release()

    def _transport_lost(self, error: TransportClosed):
        logger.info("[Session] 🔌 Opponent left; board frozen")
        self.transport_closed = True
        if self.protocol:
            self.protocol.close()
        self._report(error)
        self._start_release()

    def _start_release(self):
        if self._release_task is None:
            self._release_task = self._spawn(self._release_after_failure())

    async def _release_after_failure(self):
        await self._cancel_tasks()
        if self.voice is not None:
            voice, self.voice = self.voice, None
            await voice.close()
        await self.broker.teardown()

    def _report(self, error: PeerSessionError):
        if self.on_error:
            self.on_error(error)

    # --- voice ---
    def _voice_signal(self, message):
        if self.voice is None:
            logger.debug("[Session] voice disabled; ignoring voice signal")
            return
        if isinstance(message, VoiceOffer):
            self._spawn(self._run_voice(self.voice.handle_offer(message)))
        elif isinstance(message, VoiceAnswer):
            self._spawn(self._run_voice(self.voice.handle_answer(message)))

    async def _run_voice(self, step):
        try:
            await step
        except PeerSessionError as e:
            self._report(e)
        except Exception as e:
            logger.warning(f"[Voice] ⚠️ Voice negotiation failed, playing on without it: {e}")

    def _player_connected(self, info: PlayerInfo):
        if self.on_player_connect:
            self.on_player_connect(info)

    def _message_received(self, message):
        if self.on_message:
            self.on_message(message)

    def _game_over(self, outcome: str):
        if self.on_game_over:
            self.on_game_over(outcome)

    def _remote_audio(self, track):
        if self.on_remote_audio_stream:
            self.on_remote_audio_stream(track)

    def set_muted(self, muted: bool) -> bool:
        return self.voice.set_muted(muted) if self.voice else False

    # --- game actions ---
    def send_move(self, position: int) -> Optional[str]:
        if self.transport_closed:
            raise TransportClosed("Your opponent left the game.")
        if self.protocol is None:
            raise RuntimeError("No opponent connected yet.")
        if self.protocol.winner:
            raise ValueError("The game is over. Restart to play again.")
        if not self.is_my_turn:
            raise ValueError("Wait for your turn.")
        if not self.board.is_free(position):
            raise ValueError("That square is taken.")
        return self.protocol.play(position)

    def send_restart(self):
        if self.transport_closed:
            raise TransportClosed("Your opponent left the game.")
        if self.protocol is None:
            raise RuntimeError("No opponent connected yet.")
        self.protocol.restart()

    # --- tasks & teardown ---
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Session] background task failed: {task.exception()!r}")

    async def _cancel_tasks(self):
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t not in (current, self._release_task) and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def leave(self):
        """Ends or abandons the game and releases everything. Idempotent."""
        await self._cancel_tasks()
        release = self._release_task
        if release is not None and release is not asyncio.current_task():
            # A failure release in progress runs to completion.
            await asyncio.wait({release})
        if self.protocol is not None:
            self.protocol.close()
        if self.voice is not None:
            voice, self.voice = self.voice, None
            await voice.close()
        if self.negotiator is not None:
            await self.negotiator.close()
        await self.broker.teardown()
        self._outbox = None
        self._broker_channel = None
