"""
Session controller for realtime voice role-play.

Drives one WebRTC session with the OpenAI Realtime API: credential, local
audio, peer connection, control channel handshake, event dispatch and
teardown.

All resources of a session are released through a single teardown routine
used by every exit path, so a failed connect, an explicit disconnect, a
scenario switch and a peer failure leave the same clean baseline behind.
"""

import asyncio
import logging
import traceback
from functools import partial
from typing import Any, Callable, Optional

from aiortc.contrib.media import MediaRecorder

from voice_roleplay.config import Settings
from voice_roleplay.credentials import CredentialBroker
from voice_roleplay.dispatcher import EventDispatcher
from voice_roleplay.errors import (
    ChannelError,
    CredentialExpired,
    NegotiationFailed,
    SessionError,
)
from voice_roleplay.media import AudioConstraints, MediaSource, MicrophoneSource
from voice_roleplay.models import (
    ClientEvent,
    ConnectionState,
    ConversationItemCreateEvent,
    InputAudioBufferClearEvent,
    ResponseCreateEvent,
    Scenario,
    SessionConfiguration,
    SessionTemplate,
    SessionUpdateEvent,
    TranscriptEntry,
)
from voice_roleplay.transport import ControlChannel, PeerTransport, Transport, blackhole_sink

logger = logging.getLogger(__name__)

# Upper bound when waiting for session.updated before the first response.create
SESSION_ACK_TIMEOUT = 5.0


class SessionController:
    """
    Owns the lifecycle of one realtime voice session at a time.

    Attributes:
        voice: Voice used in the session configuration
        response_settle_delay: Wait between session.update and the first response.create
        wait_for_session_ack: Send the first response.create once session.updated
            arrives instead of after the fixed delay
    """

    def __init__(
        self,
        broker: CredentialBroker,
        media_factory: Callable[[], MediaSource],
        transport_factory: Callable[[], Transport],
        on_transcript: Optional[Callable[[str, bool], None]] = None,
        on_connection_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        voice: str = "shimmer",
        response_settle_delay: float = 0.5,
        wait_for_session_ack: bool = False,
    ):
        """
        Initialize the controller.

        Args:
            broker: Issues a fresh credential for every connect
            media_factory: Builds the local audio source for one connection
            transport_factory: Builds the peer transport for one connection
            on_transcript: Called with (text, is_user) for each finished transcript
            on_connection_state_change: Called whenever the lifecycle state changes
            on_error: Called once for every error the session reports
            voice: Voice for the assistant
            response_settle_delay: Seconds between session.update and response.create
            wait_for_session_ack: Wait for session.updated instead of the fixed delay
        """
        self._broker = broker
        self._media_factory = media_factory
        self._transport_factory = transport_factory
        self.on_transcript = on_transcript
        self.on_connection_state_change = on_connection_state_change
        self.on_error = on_error
        self.voice = voice
        self.response_settle_delay = response_settle_delay
        self.wait_for_session_ack = wait_for_session_ack

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._muted = False
        self._scenario: Optional[Scenario] = None
        self._media: Optional[MediaSource] = None
        self._transport: Optional[Transport] = None
        self._channel: Optional[ControlChannel] = None
        self._dispatcher: Optional[EventDispatcher] = None
        self._session_ack: Optional[asyncio.Event] = None
        self._handshake_task: Optional[asyncio.Task] = None
        self._background_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **callbacks: Any) -> "SessionController":
        """Build a controller wired to the real broker, microphone and aiortc transport."""
        broker = CredentialBroker(
            settings.credential_broker_url,
            template=SessionTemplate(model=settings.realtime_model, voice=settings.voice),
            timeout=settings.credential_timeout,
        )
        constraints = AudioConstraints(sample_rate=settings.audio_sample_rate)

        if settings.audio_output_device:
            sink_factory = partial(
                MediaRecorder, settings.audio_output_device, format=settings.audio_output_format
            )
        else:
            sink_factory = blackhole_sink

        return cls(
            broker=broker,
            media_factory=partial(
                MicrophoneSource,
                settings.audio_input_device,
                settings.audio_input_format,
                constraints,
            ),
            transport_factory=partial(
                PeerTransport,
                settings.realtime_base_url,
                settings.realtime_model,
                settings.stun_servers,
                settings.ice_gathering_timeout,
                settings.negotiation_timeout,
                sink_factory,
            ),
            voice=settings.voice,
            response_settle_delay=settings.response_settle_delay,
            wait_for_session_ack=settings.wait_for_session_ack,
            **callbacks,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def scenario(self) -> Optional[Scenario]:
        return self._scenario

    async def __aenter__(self) -> "SessionController":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # --- Public operations ---

    async def connect(self, scenario: Scenario) -> None:
        """
        Start a new session for ``scenario``, tearing down any previous one.

        If another connect or a disconnect supersedes this call while it is
        still negotiating, it releases what it created and returns quietly.

        Raises:
            SessionError: The single error reported for a failed attempt
        """
        self._attempt += 1
        attempt = self._attempt
        await self._teardown()

        if self._is_stale(attempt):
            return

        self._scenario = scenario
        self._session_ack = asyncio.Event()
        self._set_state(ConnectionState.NEGOTIATING)
        logger.info("Connecting: scenario=%s, attempt=%s", scenario.id, attempt)

        media: Optional[MediaSource] = None
        transport: Optional[Transport] = None
        channel: Optional[ControlChannel] = None
        try:
            credential = await self._broker.request_credential()
            if self._is_stale(attempt):
                logger.info("Attempt %s superseded after credential request", attempt)
                return

            if credential.is_expired():
                raise CredentialExpired("Ephemeral key expired")

            media = self._media_factory()
            self._media = media
            track = await media.acquire()
            if self._is_stale(attempt):
                logger.info("Attempt %s superseded after media acquisition", attempt)
                await self._release(media, None, None)
                return

            transport = self._transport_factory()
            self._transport = transport
            transport.on_connection_state_change = partial(self._handle_peer_state, attempt)
            channel = transport.create_control_channel()
            self._channel = channel
            self._wire_channel(attempt, channel, scenario)

            await transport.negotiate(credential, track)
            if self._is_stale(attempt):
                logger.info("Attempt %s superseded after negotiation", attempt)
                await self._release(media, transport, channel)
                return

        except asyncio.CancelledError:
            if not self._is_stale(attempt):
                self._attempt += 1
                await self._teardown()
                self._set_state(ConnectionState.DISCONNECTED)
            else:
                await self._release(media, transport, channel)
            raise

        except Exception as e:
            if self._is_stale(attempt):
                logger.info("Superseded attempt %s ended with: %s", attempt, e)
                await self._release(media, transport, channel)
                return

            error = e if isinstance(e, SessionError) else NegotiationFailed(str(e))
            logger.error("Connection error: %s", error)
            if not isinstance(e, SessionError):
                logger.error("Full traceback:\n%s", traceback.format_exc())

            self._attempt += 1
            await self._teardown()
            self._set_state(ConnectionState.DISCONNECTED)
            self._report_error(error)
            if error is e:
                raise
            raise error from e

        logger.info("Negotiation complete for attempt %s", attempt)

    async def disconnect(self) -> None:
        """Tear down the current session. Safe to call at any time, any number of times."""
        self._attempt += 1
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)

    def toggle_mute(self) -> bool:
        """
        Flip the local track between enabled and disabled.

        Muting also clears the remote input audio buffer so no pre-mute audio
        is transcribed. No-op without a local track.

        Returns:
            True if the microphone is now muted
        """
        track = self._media.track if self._media is not None else None
        if track is None:
            logger.debug("No local track to mute")
            return self._muted

        track.enabled = not track.enabled
        self._muted = not track.enabled

        if self._muted:
            self._send(InputAudioBufferClearEvent())

        logger.info("Microphone %s", "muted" if self._muted else "unmuted")
        return self._muted

    def send_message(self, text: str) -> None:
        """Add a typed user message to the conversation and request a response."""
        item_sent = self._send(ConversationItemCreateEvent.user_text(text))
        response_sent = self._send(ResponseCreateEvent())
        if item_sent and response_sent:
            logger.info("Text message sent: %s", text[:50] if len(text) > 50 else text)

    # --- Teardown ---

    def _is_stale(self, attempt: int) -> bool:
        return attempt != self._attempt

    async def _teardown(self) -> None:
        handshake, self._handshake_task = self._handshake_task, None
        if handshake is not None and not handshake.done():
            handshake.cancel()

        channel, self._channel = self._channel, None
        transport, self._transport = self._transport, None
        media, self._media = self._media, None
        self._dispatcher = None
        self._session_ack = None
        self._muted = False

        await self._release(media, transport, channel)

    async def _release(
        self,
        media: Optional[MediaSource],
        transport: Optional[Transport],
        channel: Optional[ControlChannel],
    ) -> None:
        if channel is not None:
            channel.close()
        if transport is not None:
            await transport.close()
        if media is not None:
            media.release()

    async def _fail(self, attempt: int, error: Optional[SessionError]) -> None:
        if self._is_stale(attempt):
            return
        self._attempt += 1
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        if error is not None:
            self._report_error(error)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # --- Transport and channel callbacks ---

    def _handle_peer_state(self, attempt: int, state: str) -> None:
        if self._is_stale(attempt):
            return

        logger.info("Peer connection state: %s", state)
        if state == "connected":
            self._set_state(ConnectionState.CONNECTED)
        elif state == "failed":
            self._set_state(ConnectionState.FAILED)
            self._spawn(self._fail(attempt, ChannelError("Peer connection failed")))
        elif state == "closed":
            self._spawn(self._fail(attempt, None))

    def _wire_channel(self, attempt: int, channel: ControlChannel, scenario: Scenario) -> None:
        self._dispatcher = EventDispatcher(
            on_transcript=self._emit_transcript,
            on_error=self._report_error,
            on_session_updated=partial(self._handle_session_updated, attempt),
        )
        channel.on_open = partial(self._handle_channel_open, attempt, scenario)
        channel.on_message = partial(self._handle_channel_message, attempt)
        channel.on_close = partial(self._handle_channel_close, attempt)
        channel.on_error = partial(self._handle_channel_error, attempt)

    def _handle_channel_open(self, attempt: int, scenario: Scenario) -> None:
        if self._is_stale(attempt):
            return
        self._handshake_task = self._spawn(self._start_conversation(attempt, scenario))

    def _handle_channel_message(self, attempt: int, message: Any) -> None:
        if self._is_stale(attempt) or self._dispatcher is None:
            return
        self._dispatcher.dispatch(message)

    def _handle_channel_close(self, attempt: int) -> None:
        if self._is_stale(attempt):
            return
        logger.warning("Data channel closed while session active")

    def _handle_channel_error(self, attempt: int, error: Any) -> None:
        if self._is_stale(attempt):
            return
        self._spawn(self._fail(attempt, ChannelError(f"Data channel error: {error}")))

    def _handle_session_updated(self, attempt: int, session: dict) -> None:
        if self._is_stale(attempt) or self._session_ack is None:
            return
        self._session_ack.set()

    async def _start_conversation(self, attempt: int, scenario: Scenario) -> None:
        """Send the session configuration, then let the assistant speak first."""
        config = SessionConfiguration.for_scenario(scenario, voice=self.voice)
        if not self._send(SessionUpdateEvent(session=config)):
            return

        ack = self._session_ack
        if self.wait_for_session_ack and ack is not None:
            try:
                await asyncio.wait_for(ack.wait(), SESSION_ACK_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("No session.updated after %.1fs, starting anyway", SESSION_ACK_TIMEOUT)
        else:
            await asyncio.sleep(self.response_settle_delay)

        if self._is_stale(attempt):
            return
        if self._send(ResponseCreateEvent()):
            logger.info("Sent initial response.create to start conversation")

    # --- Observers ---

    def _send(self, event: ClientEvent) -> bool:
        if self._channel is None:
            logger.warning("Data channel not open, cannot send event: %s", event.type)
            return False
        return self._channel.send_event(event)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info("Session state: %s -> %s", self._state.value, state.value)
        self._state = state
        self._notify(self.on_connection_state_change, state)

    def _emit_transcript(self, entry: TranscriptEntry) -> None:
        self._notify(self.on_transcript, entry.text, entry.is_user)

    def _report_error(self, error: Exception) -> None:
        self._notify(self.on_error, error)

    def _notify(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Observer callback %r failed", callback)
