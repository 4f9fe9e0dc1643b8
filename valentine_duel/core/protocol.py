# core/protocol.py
import logging
from typing import Callable, Optional, Union, assert_never

from valentine_duel.errors import InvalidMessage, TransportClosed
from valentine_duel.game import Board
from valentine_duel.schemas import (
    GameOver,
    Message,
    Move,
    PlayerInfo,
    Restart,
    VoiceAnswer,
    VoiceOffer,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)


class SessionProtocol:
    """Typed game messages over an open data channel.

    Moves are applied locally before they are sent and applied by the receiver
    without validation. The side whose move ends the game sends GameOver; the
    other side computes the same result from the same move stream.
    """

    def __init__(
        self,
        channel,
        local_info: PlayerInfo,
        board: Board,
        on_player_connect: Optional[Callable] = None,
        on_message: Optional[Callable] = None,
        on_game_over: Optional[Callable] = None,
        on_voice_signal: Optional[Callable] = None,
    ):
        self.channel = channel
        self.local_info = local_info
        self.board = board
        self.on_player_connect = on_player_connect
        self.on_message = on_message
        self.on_game_over = on_game_over
        self.on_voice_signal = on_voice_signal

        self.opponent: Optional[PlayerInfo] = None
        self.winner: Optional[str] = None
        self.closed = False
        self._started = False

    def start(self):
        if self._started:
            return
        self._started = True

        @self.channel.on("message")
        def on_message(raw):
            self.handle_raw(raw)

        self.send(self.local_info)

    def send(self, message: Message):
        if self.closed or self.channel.readyState != "open":
            raise TransportClosed("Your opponent left the game.")
        self.channel.send(encode_message(message))

    # --- outgoing ---
    def play(self, position: int) -> Optional[str]:
        symbol = self.local_info.symbol
        self.board.apply(position, symbol)
        self.send(Move(position=position, player=symbol))
        outcome = self.board.outcome()
        if outcome:
            self._finish(outcome)
            self.send(GameOver(winner=outcome))
        return outcome

    def restart(self):
        self._reset()
        self.send(Restart())

    # --- incoming ---
    def handle_raw(self, raw: Union[str, bytes]):
        if self.closed:
            return
        try:
            message = decode_message(raw)
        except InvalidMessage as e:
            logger.warning(f"[Protocol] ⚠️ Discarding malformed message: {e}")
            return
        if message is None:
            logger.debug("[Protocol] Ignoring message with unknown type")
            return
        try:
            self._dispatch(message)
        except Exception:
            logger.exception(f"[Protocol] Handler failed for '{message.type}'")
            return
        if self.on_message:
            self.on_message(message)

    def _dispatch(self, message: Message):
        if isinstance(message, PlayerInfo):
            if self.opponent is not None:
                logger.debug("[Protocol] Duplicate playerInfo ignored")
                return
            self.opponent = message
            logger.info(f"[Protocol] 👋 Opponent is {message.name} ({message.symbol})")
            if self.on_player_connect:
                self.on_player_connect(message)
        elif isinstance(message, Move):
            self.board.apply(message.position, message.player)
            outcome = self.board.outcome()
            if outcome:
                self._finish(outcome)
        elif isinstance(message, GameOver):
            if self.winner is None:
                self._finish(message.winner)
            elif self.winner != message.winner:
                logger.warning(f"[Protocol] ⚠️ Peer reports winner {message.winner}, local board says {self.winner}")
        elif isinstance(message, Restart):
            self._reset()
        elif isinstance(message, (VoiceOffer, VoiceAnswer)):
            if self.on_voice_signal:
                self.on_voice_signal(message)
        else:
            assert_never(message)

    def _finish(self, outcome: str):
        if self.winner is not None:
            return
        self.winner = outcome
        logger.info(f"[Protocol] 🏁 Game over: {outcome}")
        if self.on_game_over:
            self.on_game_over(outcome)

    def _reset(self):
        self.board.reset()
        self.winner = None

    def close(self):
        self.closed = True
