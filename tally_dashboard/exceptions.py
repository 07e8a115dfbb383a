"""
Exceptions Module
Failure taxonomy for talking to Tally

Callers branch on ``kind``; ``detail`` carries the raw diagnostic for logs.
"""

from enum import Enum


class ErrorKind(str, Enum):
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    MALFORMED_RESPONSE = "malformed_response"
    REMOTE_REJECTED = "remote_rejected"


class TallyError(Exception):
    """Base class for every failure raised while talking to Tally"""

    kind = ErrorKind.TRANSPORT

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class TransportError(TallyError):
    """Tally could not be reached; the next poll cycle retries"""


class ConnectionRefused(TransportError):
    kind = ErrorKind.CONNECTION_REFUSED


class TallyTimeout(TransportError):
    kind = ErrorKind.TIMEOUT


class ProtocolError(TallyError):
    """The response did not parse or lacked the expected structure"""

    kind = ErrorKind.MALFORMED_RESPONSE


class MalformedResponse(ProtocolError):
    pass


class RemoteRejected(TallyError):
    """Tally parsed the request and reported that nothing was applied"""

    kind = ErrorKind.REMOTE_REJECTED


class SyncAborted(Exception):
    """Raised inside a sync pass to stop it and record the error state"""

    def __init__(self, message: str, kind: ErrorKind = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
