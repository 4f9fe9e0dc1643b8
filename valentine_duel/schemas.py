# schemas.py
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from valentine_duel.errors import InvalidDescriptor, InvalidMessage

Symbol = Literal["X", "O"]
Outcome = Literal["X", "O", "draw"]


# --- Negotiation payloads ---
class IceCandidatePayload(BaseModel):
    candidate: str = Field(..., min_length=1)
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class SessionDescriptionPayload(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str = Field(..., min_length=1)


class ExchangeBlob(SessionDescriptionPayload):
    """Manual copy/paste format: a session description with its candidates trailing."""
    candidates: List[IceCandidatePayload] = Field(default_factory=list)
    game_code: Optional[str] = None

    @property
    def description(self) -> SessionDescriptionPayload:
        return SessionDescriptionPayload(type=self.type, sdp=self.sdp)

    def to_text(self) -> str:
        return self.model_dump_json(exclude_none=True)


class CandidateBundle(BaseModel):
    candidates: List[IceCandidatePayload] = Field(default_factory=list)

    def to_text(self) -> str:
        return self.model_dump_json()


def _load_json(text: str, what: str) -> Any:
    if not text or not text.strip():
        raise InvalidDescriptor(f"Empty {what}. Please paste the complete text from your friend.")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidDescriptor(f"{what} is not valid JSON ({e.msg}). Please copy it again.") from e


def parse_exchange_blob(text: str, expected: Optional[str] = None) -> ExchangeBlob:
    data = _load_json(text, "connection data")
    try:
        blob = ExchangeBlob.model_validate(data)
    except ValidationError as e:
        raise InvalidDescriptor(f"Connection data is incomplete: {e.error_count()} problem(s) found.") from e
    if expected and blob.type != expected:
        raise InvalidDescriptor(f"Expected an {expected.upper()} but got an {blob.type.upper()}.")
    return blob


def parse_candidate_bundle(text: str) -> CandidateBundle:
    data = _load_json(text, "candidate list")
    if isinstance(data, list):
        data = {"candidates": data}
    try:
        return CandidateBundle.model_validate(data)
    except ValidationError as e:
        raise InvalidDescriptor("Candidate list is malformed. Please copy it again.") from e


# --- Rendezvous wire format ---
class SignalEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["signal"] = "signal"
    to: str
    sender: Optional[str] = Field(None, alias="from")
    action: str
    payload: Optional[Dict[str, Any]] = None

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class BrokerNotice(BaseModel):
    type: Literal["open", "error"]
    id: Optional[str] = None
    reason: Optional[str] = None
    to: Optional[str] = None


# --- Session messages ---
class PlayerInfo(BaseModel):
    type: Literal["playerInfo"] = "playerInfo"
    name: str
    symbol: Symbol


class Move(BaseModel):
    type: Literal["move"] = "move"
    position: int = Field(..., ge=0, le=8)
    player: Symbol


class GameOver(BaseModel):
    type: Literal["gameOver"] = "gameOver"
    winner: Outcome


class Restart(BaseModel):
    type: Literal["restart"] = "restart"


class VoiceOffer(BaseModel):
    type: Literal["voiceOffer"] = "voiceOffer"
    sdp: str


class VoiceAnswer(BaseModel):
    type: Literal["voiceAnswer"] = "voiceAnswer"
    sdp: str


Message = Annotated[
    Union[PlayerInfo, Move, GameOver, Restart, VoiceOffer, VoiceAnswer],
    Field(discriminator="type"),
]
_message_adapter = TypeAdapter(Message)
MESSAGE_TAGS = frozenset({"playerInfo", "move", "gameOver", "restart", "voiceOffer", "voiceAnswer"})


def encode_message(message: BaseModel) -> str:
    return message.model_dump_json()


def decode_message(raw: Union[str, bytes]) -> Optional[BaseModel]:
    """Returns the typed message, or None for a tag this version does not know."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidMessage(f"not JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidMessage("message is not an object")
    if data.get("type") not in MESSAGE_TAGS:
        return None
    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidMessage(f"bad {data.get('type')} message: {e.error_count()} error(s)") from e
