"""Routes inbound control channel messages to session callbacks."""

import logging
from typing import Any, Callable, Optional

from voice_roleplay.errors import MalformedEvent, ProtocolError
from voice_roleplay.models import (
    ASSISTANT_TRANSCRIPT_DONE,
    GA_ASSISTANT_TRANSCRIPT_DONE,
    LEGACY_USER_TRANSCRIPTION_COMPLETED,
    USER_TRANSCRIPTION_COMPLETED,
    AssistantTranscriptDoneEvent,
    ErrorEvent,
    InputTranscriptionCompletedEvent,
    ServerEvent,
    SessionUpdatedEvent,
    TranscriptEntry,
    parse_server_event,
)

logger = logging.getLogger(__name__)


def _preview(text: str) -> str:
    return text[:100] if len(text) > 100 else text


class EventDispatcher:
    """
    Parses control channel messages and routes each event kind.

    Dispatch covers every ``type``: known kinds go to their handler, the rest
    fall through to an ignore handler. Malformed messages are logged and
    dropped; dispatch never raises on bad input.

    Args:
        on_transcript: Called with each finished TranscriptEntry
        on_error: Called with a ProtocolError for every inbound error event
        on_session_updated: Called when the remote side acknowledges session.update
    """

    def __init__(
        self,
        on_transcript: Callable[[TranscriptEntry], None],
        on_error: Callable[[ProtocolError], None],
        on_session_updated: Optional[Callable[[dict], None]] = None,
    ):
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.on_session_updated = on_session_updated
        self._user_item_ids: set[str] = set()

        # Current and legacy names share one handler
        self._handlers: dict[str, Callable[[Any], None]] = {
            USER_TRANSCRIPTION_COMPLETED: self._handle_user_transcript,
            LEGACY_USER_TRANSCRIPTION_COMPLETED: self._handle_user_transcript,
            ASSISTANT_TRANSCRIPT_DONE: self._handle_assistant_transcript,
            GA_ASSISTANT_TRANSCRIPT_DONE: self._handle_assistant_transcript,
            "error": self._handle_error,
            "session.updated": self._handle_session_updated,
        }

    def dispatch(self, message: Any) -> Optional[ServerEvent]:
        """
        Handle one raw message from the control channel.

        Returns:
            The parsed event, or None if the message was malformed
        """
        try:
            event = parse_server_event(message)
        except MalformedEvent as e:
            logger.warning("Failed to parse message: %s", e)
            return None

        logger.debug("Received event: %s", event.type)
        handler = self._handlers.get(event.type, self._handle_unknown)
        handler(event)
        return event

    def _handle_user_transcript(self, event: InputTranscriptionCompletedEvent) -> None:
        if event.item_id is not None:
            if event.item_id in self._user_item_ids:
                logger.debug("Duplicate user transcript for item %s (%s)", event.item_id, event.type)
                return
            self._user_item_ids.add(event.item_id)

        logger.info("User transcript: %s", _preview(event.transcript))
        self.on_transcript(TranscriptEntry(text=event.transcript, is_user=True))

    def _handle_assistant_transcript(self, event: AssistantTranscriptDoneEvent) -> None:
        logger.info("Assistant transcript: %s", _preview(event.transcript))
        self.on_transcript(TranscriptEntry(text=event.transcript, is_user=False))

    def _handle_error(self, event: ErrorEvent) -> None:
        detail = event.error
        logger.error("Realtime API error: %s - %s", detail.code, detail.message)
        self.on_error(ProtocolError(
            detail.message,
            code=detail.code,
            error_type=detail.type,
            param=detail.param,
            event_id=detail.event_id,
        ))

    def _handle_session_updated(self, event: SessionUpdatedEvent) -> None:
        instructions = event.session.get("instructions")
        if instructions:
            logger.info("Session updated, instructions (preview): %s...", instructions[:100])
        else:
            logger.info("Session updated")
        if self.on_session_updated is not None:
            self.on_session_updated(event.session)

    def _handle_unknown(self, event: ServerEvent) -> None:
        logger.debug("Unhandled event type: %s", event.type)
