# core/voice.py
import asyncio
import fractions
import logging
from typing import Callable, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame
from av.error import FFmpegError

from valentine_duel.config import Settings
from valentine_duel.core.rtc_peer import build_ice_config
from valentine_duel.errors import MediaPermissionDenied
from valentine_duel.schemas import VoiceAnswer, VoiceOffer

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
SAMPLES_PER_FRAME = 960  # 20 ms


def _silence(samples: int, format: str = "s16", layout: str = "mono") -> AudioFrame:
    frame = AudioFrame(format=format, layout=layout, samples=samples)
    for p in frame.planes:
        p.update(bytes(p.buffer_size))
    return frame


class MutableAudioTrack(MediaStreamTrack):
    """Outgoing voice. Sends silence when muted or when there is no capture source."""

    kind = "audio"

    def __init__(self, source: Optional[MediaStreamTrack] = None):
        super().__init__()
        self.source = source
        self.muted = False
        self._pts = 0

    async def recv(self):
        if self.source is None:
            frame = _silence(SAMPLES_PER_FRAME)
            frame.pts = self._pts
            frame.sample_rate = SAMPLE_RATE
            frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
            self._pts += SAMPLES_PER_FRAME
            await asyncio.sleep(0.02)
            return frame

        frame = await self.source.recv()
        if not self.muted:
            return frame
        silent = _silence(frame.samples, frame.format.name, frame.layout.name)
        silent.pts = frame.pts
        silent.sample_rate = frame.sample_rate
        silent.time_base = frame.time_base
        return silent

    def stop(self):
        super().stop()
        if self.source is not None:
            self.source.stop()


def open_microphone(settings: Settings) -> Optional[MediaStreamTrack]:
    """Opens the configured capture device. No device configured means silence is sent."""
    if not settings.voice_device:
        return None
    try:
        player = MediaPlayer(settings.voice_device, format=settings.voice_format)
    except (OSError, FFmpegError) as e:
        raise MediaPermissionDenied(f"Microphone {settings.voice_device!r} could not be opened: {e}") from e
    if player.audio is None:
        raise MediaPermissionDenied(f"{settings.voice_device!r} has no audio input.")
    return player.audio


class VoiceLink:
    """Audio call on its own peer connection, signaled over the game channel.

    The initiator sends a VoiceOffer as soon as the game channel is open; the other
    side answers automatically. Muting is local only.
    """

    def __init__(
        self,
        send_signal: Callable,
        ice_servers: List[str],
        audio_source_factory: Callable,
        pc_factory: Optional[Callable] = None,
        on_remote_stream: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
    ):
        self.send_signal = send_signal
        self.ice_config = build_ice_config(ice_servers)
        self.audio_source_factory = audio_source_factory
        self._pc_factory = pc_factory or RTCPeerConnection
        self.on_remote_stream = on_remote_stream
        self.on_error = on_error
        self.pc = None
        self.track: Optional[MutableAudioTrack] = None
        self.closed = False

    def _open_local_track(self) -> Optional[MutableAudioTrack]:
        try:
            source = self.audio_source_factory()
        except MediaPermissionDenied as e:
            logger.warning(f"[Voice] 🎙️ {e} Continuing without sending audio.")
            if self.on_error:
                self.on_error(e)
            return None
        return MutableAudioTrack(source)

    def _create_pc(self):
        pc = self._pc_factory(configuration=self.ice_config)

        @pc.on("track")
        def on_track(track):
            logger.info(f"[Voice] 🎧 remote {track.kind} track")
            if track.kind == "audio" and self.on_remote_stream:
                self.on_remote_stream(track)

        self.track = self._open_local_track()
        if self.track is not None:
            pc.addTrack(self.track)
        else:
            pc.addTransceiver("audio", direction="recvonly")
        self.pc = pc
        return pc

    async def start_call(self):
        if self.closed or self.pc is not None:
            return
        pc = self._create_pc()
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        if self.closed:
            return
        self.send_signal(VoiceOffer(sdp=pc.localDescription.sdp))

    async def handle_offer(self, message: VoiceOffer):
        if self.closed:
            return
        pc = self.pc or self._create_pc()
        await pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="offer"))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        if self.closed:
            return
        self.send_signal(VoiceAnswer(sdp=pc.localDescription.sdp))

    async def handle_answer(self, message: VoiceAnswer):
        if self.closed or self.pc is None:
            return
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="answer"))

    @property
    def muted(self) -> bool:
        return self.track is not None and self.track.muted

    def set_muted(self, muted: bool) -> bool:
        if self.track is not None:
            self.track.muted = muted
        return self.muted

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.track is not None:
            self.track.stop()
        pc, self.pc = self.pc, None
        if pc is not None:
            await pc.close()
