class RoomError(Exception):
    """Base class for room session errors."""


class InvalidInput(RoomError):
    """Raised for an empty ticket list or a malformed request."""


class RoomNotFound(RoomError):
    """Raised when no snapshot exists for the room id."""


class UserAlreadyJoined(RoomError):
    """Raised when the user name is already present in the room."""


class Unauthorized(RoomError):
    """Raised internally when a participant lacks the game-master role.

    The session manager catches it and only logs; clients never see it.
    """


class StaleTicketVote(RoomError):
    """Raised internally for a vote on a ticket that is not current."""


class StoreUnavailable(RoomError):
    """Raised when the snapshot store fails and no cached copy exists."""
