"""Error taxonomy shared by the backends and the session manager."""


class NomiError(Exception):
    """Base class for every failure the session manager knows how to handle."""

    default_message = "Something went wrong"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(NomiError):
    default_message = "Not authenticated"


class QuotaExceeded(NomiError):
    default_message = "Daily message limit reached"

    def __init__(self, current: int, limit: int, message: str | None = None):
        self.current = current
        self.limit = limit
        super().__init__(message)


class TransportError(NomiError):
    default_message = "Network connection failed"


class ServerError(NomiError):
    default_message = "Unknown error"

    def __init__(self, status: int | None, message: str | None = None):
        self.status = status
        super().__init__(message)


class DecodeError(ServerError):
    default_message = "Invalid response"

    def __init__(self, message: str | None = None, status: int | None = None):
        super().__init__(status, message)
