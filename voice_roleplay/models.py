import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voice_roleplay.errors import MalformedEvent


class ConnectionState(Enum):
    """Lifecycle states of a realtime session."""
    DISCONNECTED = "disconnected"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"


# --- Credential Models ---

class SessionTemplate(BaseModel):
    """Request body for POST /session."""
    model: Optional[str] = None
    voice: Optional[str] = None


class ClientSecret(BaseModel):
    """Short-lived secret issued by the Realtime sessions endpoint."""
    value: str = Field(min_length=1)
    expires_at: int = Field(gt=0)  # unix seconds


class ClientSecretResponse(BaseModel):
    """Response body for POST /session."""
    client_secret: ClientSecret


class SessionCredential(BaseModel):
    """Credential authorizing a single negotiation attempt."""
    model_config = ConfigDict(frozen=True)

    secret: str
    expires_at: datetime

    @classmethod
    def from_response(cls, response: ClientSecretResponse) -> "SessionCredential":
        return cls(
            secret=response.client_secret.value,
            expires_at=datetime.fromtimestamp(response.client_secret.expires_at, tz=timezone.utc),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


# --- Scenario ---

class Scenario(BaseModel):
    """A role-play prompt the assistant plays out with the user."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    icon: str
    level: Literal["beginner", "intermediate", "advanced"]
    instructions: str


# --- Session Configuration ---

class InputAudioTranscription(BaseModel):
    model: str = "whisper-1"


class TurnDetection(BaseModel):
    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 200


class SessionConfiguration(BaseModel):
    """Body of the session.update event."""
    modalities: list[Literal["text", "audio"]] = ["text", "audio"]
    instructions: str
    voice: str = "shimmer"
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    input_audio_transcription: InputAudioTranscription = Field(default_factory=InputAudioTranscription)
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)
    tools: list[dict] = []
    tool_choice: str = "auto"
    temperature: float = 0.8
    max_response_output_tokens: Union[int, Literal["inf"]] = "inf"

    @classmethod
    def for_scenario(cls, scenario: Scenario, voice: str = "shimmer") -> "SessionConfiguration":
        return cls(instructions=scenario.instructions, voice=voice)


# --- Outbound Events ---

class ClientEvent(BaseModel):
    """Base class for events sent over the control channel."""
    type: str

    def to_wire(self) -> str:
        """Serialize to a single newline-free JSON object."""
        return self.model_dump_json(exclude_none=True)


class SessionUpdateEvent(ClientEvent):
    type: Literal["session.update"] = "session.update"
    session: SessionConfiguration


class InputText(BaseModel):
    type: Literal["input_text", "text"] = "input_text"
    text: str


class ConversationItem(BaseModel):
    type: Literal["message"] = "message"
    role: Literal["user", "assistant"] = "user"
    content: list[InputText]


class ConversationItemCreateEvent(ClientEvent):
    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: ConversationItem

    @classmethod
    def user_text(cls, text: str) -> "ConversationItemCreateEvent":
        return cls(item=ConversationItem(content=[InputText(text=text)]))


class ResponseCreateEvent(ClientEvent):
    type: Literal["response.create"] = "response.create"


class InputAudioBufferClearEvent(ClientEvent):
    type: Literal["input_audio_buffer.clear"] = "input_audio_buffer.clear"


# --- Inbound Events ---

USER_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
LEGACY_USER_TRANSCRIPTION_COMPLETED = "input_audio_transcription.completed"
ASSISTANT_TRANSCRIPT_DONE = "response.audio_transcript.done"
GA_ASSISTANT_TRANSCRIPT_DONE = "response.output_audio_transcript.done"


class ServerEvent(BaseModel):
    """Base class for events received over the control channel."""
    type: str
    event_id: Optional[str] = None


class SessionUpdatedEvent(ServerEvent):
    type: Literal["session.updated"]
    session: dict = {}


class InputTranscriptionCompletedEvent(ServerEvent):
    type: Literal[
        "conversation.item.input_audio_transcription.completed",
        "input_audio_transcription.completed",
    ]
    transcript: str
    item_id: Optional[str] = None


class AssistantTranscriptDoneEvent(ServerEvent):
    type: Literal[
        "response.audio_transcript.done",
        "response.output_audio_transcript.done",
    ]
    transcript: str
    item_id: Optional[str] = None
    response_id: Optional[str] = None


class ErrorDetail(BaseModel):
    type: Optional[str] = None
    code: Optional[str] = None
    message: str = "Unknown error"
    param: Optional[str] = None
    event_id: Optional[str] = None


class ErrorEvent(ServerEvent):
    type: Literal["error"]
    error: ErrorDetail = Field(default_factory=ErrorDetail)


class UnknownEvent(ServerEvent):
    """Any inbound type this client does not act on."""


SERVER_EVENT_TYPES: dict[str, type[ServerEvent]] = {
    "session.updated": SessionUpdatedEvent,
    USER_TRANSCRIPTION_COMPLETED: InputTranscriptionCompletedEvent,
    LEGACY_USER_TRANSCRIPTION_COMPLETED: InputTranscriptionCompletedEvent,
    ASSISTANT_TRANSCRIPT_DONE: AssistantTranscriptDoneEvent,
    GA_ASSISTANT_TRANSCRIPT_DONE: AssistantTranscriptDoneEvent,
    "error": ErrorEvent,
}


def parse_server_event(raw: Union[str, bytes]) -> ServerEvent:
    """
    Parse one control channel message into its event variant.

    Unknown types become UnknownEvent; anything that is not a JSON object
    with a string ``type`` raises MalformedEvent.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedEvent(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MalformedEvent("Message is not an object with a string 'type'")

    model = SERVER_EVENT_TYPES.get(data["type"], UnknownEvent)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid {data['type']} event: {e}") from e


# --- Transcript ---

class TranscriptEntry(BaseModel):
    """Single line of the conversation transcript."""
    text: str
    is_user: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
