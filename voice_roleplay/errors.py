"""Error taxonomy for realtime voice sessions.

Every error here is recoverable at the SessionController boundary: the
controller tears the session down, reports the error once, and a fresh
``connect`` call starts over.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all session failures."""


class CredentialUnavailable(SessionError):
    """The credential broker was unreachable or returned a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CredentialMalformed(CredentialUnavailable):
    """The credential broker answered, but the body was not a valid credential."""


class CredentialExpired(SessionError):
    """The credential expired before negotiation could start."""


class MediaAcquisitionFailed(SessionError):
    """The local capture device was denied or unavailable."""


class NegotiationFailed(SessionError):
    """The remote negotiation endpoint rejected the offer."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChannelError(SessionError):
    """Transport-level fault on the control channel."""


class ProtocolError(SessionError):
    """An error event sent by the remote party."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        error_type: Optional[str] = None,
        param: Optional[str] = None,
        event_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.error_type = error_type
        self.param = param
        self.event_id = event_id


class MalformedEvent(ValueError):
    """An inbound control message that could not be parsed."""
