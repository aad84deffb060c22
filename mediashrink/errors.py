from typing import Optional


class RelayError(Exception):
    """Base error for a failed compress request, carrying the HTTP status to report."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ClientInputError(RelayError):
    status_code = 400


class UpstreamFetchError(RelayError):
    """The source probe or stream open failed before any response was started."""


class StreamTransportError(RelayError):
    """The source connection failed after the body transfer began."""


class EngineError(RelayError):
    def __init__(self, message: str, stderr: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.stderr = stderr
