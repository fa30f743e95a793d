"""Client-input errors raised by the matching core. Reported back as *_error events, never fatal."""


class MatchingError(Exception):
    """Base for recoverable errors; `message` is safe to show to the client."""

    message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCoordinates(MatchingError):
    message = "Invalid coordinates provided"


class InvalidPayload(MatchingError):
    message = "Invalid request payload"


class NotAuthenticated(MatchingError):
    message = "Authentication error: Invalid token"


class MatchNotFound(MatchingError):
    message = "Match not found or expired"


class MatchNoLongerAvailable(MatchingError):
    message = "Match is no longer available"


class NotPartOfMatch(MatchingError):
    message = "You are not part of this match"


class AlreadyApproved(MatchingError):
    message = "You have already approved this match"


class EmptyMessage(MatchingError):
    message = "Message cannot be empty"


class NotPartOfConnection(MatchingError):
    message = "You are not part of this chat room"
