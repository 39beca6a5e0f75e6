"""
Local audio capture.

MicrophoneSource is the only component that starts or stops the capture
device; everything else receives the track it hands out.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import av
from av.error import FFmpegError
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from voice_roleplay.errors import MediaAcquisitionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioConstraints:
    """Capture constraints requested for the local microphone."""
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 24000
    channels: int = 1


class MediaSource(ABC):
    """Capability interface for the local audio source."""

    @property
    @abstractmethod
    def track(self) -> Optional["MutableAudioTrack"]:
        """The primary audio track, or None before acquire / after release."""

    @abstractmethod
    async def acquire(self) -> "MutableAudioTrack":
        """
        Start capture and return the primary audio track.

        Raises:
            MediaAcquisitionFailed: If the device is denied or unavailable
        """

    @abstractmethod
    def release(self) -> None:
        """Stop every track. Safe to call more than once."""


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    silent = av.AudioFrame(
        format=frame.format.name,
        layout=frame.layout.name,
        samples=frame.samples,
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


class MutableAudioTrack(MediaStreamTrack):
    """
    Audio track with an ``enabled`` switch.

    While disabled the track keeps its timing but emits silent frames, so the
    peer connection stays up and the remote side simply hears nothing.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self._source = source
        self.enabled = True

    async def recv(self) -> av.AudioFrame:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return _silence_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class MicrophoneSource(MediaSource):
    """
    Captures the local microphone through ffmpeg via aiortc's MediaPlayer.

    Args:
        device: ffmpeg input device (e.g. 'default' for pulse, ':0' for avfoundation)
        input_format: ffmpeg input format (e.g. 'pulse', 'alsa', 'avfoundation', 'dshow')
        constraints: Requested capture constraints
    """

    def __init__(
        self,
        device: str = "default",
        input_format: str = "pulse",
        constraints: Optional[AudioConstraints] = None,
    ):
        self.device = device
        self.input_format = input_format
        self.constraints = constraints or AudioConstraints()
        self._player: Optional[MediaPlayer] = None
        self._track: Optional[MutableAudioTrack] = None

    @property
    def track(self) -> Optional[MutableAudioTrack]:
        return self._track

    def _capture_options(self) -> dict:
        # Echo cancellation, noise suppression and gain control are applied by
        # the capture backend (e.g. a PulseAudio echo-cancel source as device).
        return {
            "sample_rate": str(self.constraints.sample_rate),
            "channels": str(self.constraints.channels),
        }

    def _open_player(self) -> MediaPlayer:
        return MediaPlayer(
            self.device,
            format=self.input_format,
            options=self._capture_options(),
        )

    async def acquire(self) -> MutableAudioTrack:
        if self._track is not None:
            return self._track

        logger.info(
            "Opening audio input: device=%s, format=%s, constraints=%s",
            self.device, self.input_format, self.constraints
        )
        try:
            player = await asyncio.to_thread(self._open_player)
        except (OSError, ValueError, FFmpegError) as e:
            logger.error("Failed to open audio input: %s", e)
            raise MediaAcquisitionFailed(f"Audio input unavailable: {e}") from e

        if player.audio is None:
            if player.video is not None:
                player.video.stop()
            raise MediaAcquisitionFailed(f"No audio stream on input device {self.device!r}")

        self._player = player
        self._track = MutableAudioTrack(player.audio)
        logger.info("Audio input acquired")
        return self._track

    def release(self) -> None:
        track, self._track = self._track, None
        player, self._player = self._player, None

        if track is not None:
            track.stop()
            logger.info("Audio input released")
        if player is not None and player.video is not None:
            player.video.stop()
