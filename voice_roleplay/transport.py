"""
WebRTC transport for the OpenAI Realtime API.

Transport and ControlChannel are the capability interfaces the
SessionController drives; PeerTransport and DataChannel implement them on
top of aiortc.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from voice_roleplay.errors import NegotiationFailed
from voice_roleplay.models import ClientEvent, SessionCredential

logger = logging.getLogger(__name__)

CONTROL_CHANNEL_LABEL = "oai-events"


def _emit(callback: Optional[Callable], *args: Any) -> None:
    if callback is not None:
        callback(*args)


class ControlChannel(ABC):
    """
    Ordered, reliable message channel carrying JSON protocol events.

    The owner assigns ``on_open``, ``on_message``, ``on_close`` and
    ``on_error``; implementations invoke them as the channel changes state.
    """

    def __init__(self) -> None:
        self.on_open: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[Any], None]] = None
        self.on_close: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[Any], None]] = None

    @property
    @abstractmethod
    def label(self) -> str:
        pass

    @property
    @abstractmethod
    def ready_state(self) -> str:
        """One of 'connecting', 'open', 'closing', 'closed'."""

    @abstractmethod
    def send(self, data: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Closing a closed channel is a no-op."""

    @property
    def is_open(self) -> bool:
        return self.ready_state == "open"

    def send_event(self, event: ClientEvent) -> bool:
        """
        Send one protocol event if the channel is open.

        Events sent while the channel is not open are dropped, never queued.

        Returns:
            True if the event was handed to the channel
        """
        if not self.is_open:
            logger.warning("Data channel not open, cannot send event: %s", event.type)
            return False

        self.send(event.to_wire())
        logger.debug("Sent event: %s", event.type)
        return True


class DataChannel(ControlChannel):
    """ControlChannel backed by an aiortc RTCDataChannel."""

    def __init__(self, channel: RTCDataChannel):
        super().__init__()
        self._channel = channel
        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        channel.on("close", self._handle_close)
        channel.on("error", self._handle_error)

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, data: str) -> None:
        self._channel.send(data)

    def close(self) -> None:
        if self._channel.readyState not in ("closing", "closed"):
            self._channel.close()

    def _handle_open(self) -> None:
        logger.info("Data channel opened")
        _emit(self.on_open)

    def _handle_message(self, message: Any) -> None:
        _emit(self.on_message, message)

    def _handle_close(self) -> None:
        logger.info("Data channel closed")
        _emit(self.on_close)

    def _handle_error(self, error: Any) -> None:
        logger.error("Data channel error: %s", error)
        _emit(self.on_error, error)


class Transport(ABC):
    """
    Capability interface for one negotiated peer connection.

    ``on_connection_state_change`` receives the peer connection state
    verbatim ('new', 'connecting', 'connected', 'disconnected', 'failed',
    'closed').
    """

    def __init__(self) -> None:
        self.on_connection_state_change: Optional[Callable[[str], None]] = None

    @property
    @abstractmethod
    def connection_state(self) -> str:
        pass

    @abstractmethod
    def create_control_channel(self, label: str = CONTROL_CHANNEL_LABEL) -> ControlChannel:
        """Create the control channel; must be called before negotiate()."""

    @abstractmethod
    async def negotiate(self, credential: SessionCredential, track: MediaStreamTrack) -> None:
        """
        Attach the local track, run offer/answer and apply the remote answer.

        Raises:
            NegotiationFailed: If the remote endpoint rejects the offer
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and everything it created. Idempotent."""


async def wait_for_ice_gathering(pc: RTCPeerConnection, timeout: float) -> bool:
    """
    Wait until ICE gathering completes, at most ``timeout`` seconds.

    Returns:
        True if gathering completed, False if the wait timed out. A timeout is
        not an error; the offer goes out with whatever candidates exist.
    """
    if pc.iceGatheringState == "complete":
        return True

    done = asyncio.Event()

    def on_change() -> None:
        if pc.iceGatheringState == "complete":
            done.set()

    pc.on("icegatheringstatechange", on_change)
    try:
        await asyncio.wait_for(done.wait(), timeout)
        return True
    except asyncio.TimeoutError:
        logger.warning("ICE gathering not complete after %.1fs, sending partial offer", timeout)
        return False
    finally:
        pc.remove_listener("icegatheringstatechange", on_change)


async def exchange_sdp(
    url: str,
    model: str,
    secret: str,
    offer_sdp: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    POST the local offer to the Realtime endpoint and return the answer SDP.

    Raises:
        NegotiationFailed: On a transport error or any non-success status
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(
                url,
                params={"model": model},
                content=offer_sdp,
                headers={
                    "Authorization": f"Bearer {secret}",
                    "Content-Type": "application/sdp",
                },
            )
    except httpx.HTTPError as e:
        logger.error("SDP exchange failed: %s", e)
        raise NegotiationFailed(f"WebRTC connection failed: {e}") from e

    if not response.is_success:
        logger.error("SDP exchange rejected: %s %s", response.status_code, response.text[:200])
        raise NegotiationFailed(
            f"WebRTC connection failed: {response.status_code}",
            status_code=response.status_code,
        )

    return response.text


def blackhole_sink() -> MediaBlackhole:
    return MediaBlackhole()


class PeerTransport(Transport):
    """
    aiortc peer connection to the OpenAI Realtime endpoint.

    Args:
        endpoint_url: Realtime negotiation URL (model passed as query param)
        model: Realtime model name
        stun_servers: STUN server URLs
        ice_gathering_timeout: Upper bound for ICE gathering, in seconds
        request_timeout: Timeout for the SDP exchange request
        sink_factory: Builds the sink that renders remote audio
        http_transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        endpoint_url: str,
        model: str,
        stun_servers: Optional[list[str]] = None,
        ice_gathering_timeout: float = 3.0,
        request_timeout: float = 10.0,
        sink_factory: Callable[[], Any] = blackhole_sink,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.endpoint_url = endpoint_url
        self.model = model
        self.ice_gathering_timeout = ice_gathering_timeout
        self.request_timeout = request_timeout
        self._sink_factory = sink_factory
        self._http_transport = http_transport

        ice_servers = [RTCIceServer(urls=url) for url in (stun_servers or [])]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))
        self._pc.on("connectionstatechange", self._handle_connection_state_change)
        self._pc.on("track", self._handle_track)

        self._channel: Optional[DataChannel] = None
        self._sinks: list = []
        self._sink_tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def create_control_channel(self, label: str = CONTROL_CHANNEL_LABEL) -> ControlChannel:
        if self._channel is None:
            self._channel = DataChannel(self._pc.createDataChannel(label, ordered=True))
        return self._channel

    async def negotiate(self, credential: SessionCredential, track: MediaStreamTrack) -> None:
        if self._closed:
            raise NegotiationFailed("Transport already closed")

        self._pc.addTrack(track)

        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        await wait_for_ice_gathering(self._pc, self.ice_gathering_timeout)

        answer = await exchange_sdp(
            self.endpoint_url,
            self.model,
            credential.secret,
            self._pc.localDescription.sdp,
            timeout=self.request_timeout,
            transport=self._http_transport,
        )

        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))
        except (ValueError, InvalidAccessError, InvalidStateError) as e:
            raise NegotiationFailed(f"Invalid remote answer: {e}") from e

        logger.info("WebRTC connection established")

    def _handle_connection_state_change(self) -> None:
        state = self._pc.connectionState
        logger.info("Connection state: %s", state)
        _emit(self.on_connection_state_change, state)

    def _handle_track(self, track: MediaStreamTrack) -> None:
        if track.kind != "audio" or self._closed:
            return

        logger.info("Received remote track")
        sink = self._sink_factory()
        sink.addTrack(track)
        self._sinks.append(sink)

        task = asyncio.ensure_future(sink.start())
        self._sink_tasks.add(task)
        task.add_done_callback(self._sink_tasks.discard)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._channel is not None:
            self._channel.close()

        for task in list(self._sink_tasks):
            task.cancel()
        for sink in self._sinks:
            try:
                await sink.stop()
            except Exception as e:
                logger.debug("Error stopping audio sink during close: %s", e)
        self._sinks.clear()

        await self._pc.close()
        logger.info("Peer connection closed")
