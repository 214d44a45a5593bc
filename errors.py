"""Error taxonomy for the rover client.

Hazards found while exploring are normal outcomes and never show up here.
Everything below aborts the action in progress and is reported to whoever
issued it.
"""


class RoverError(Exception):
    """Base class for every rover client failure."""


class BoundsError(RoverError):
    """A landing or target cell lies outside the planet grid."""

    def __init__(self, x, y, width, height):
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        super().__init__(
            f"({x}, {y}) is outside the {width}x{height} planet grid"
        )


class NonAdjacentMoveError(RoverError):
    """A single step was requested towards a cell that is not a direct neighbour."""


class ProtocolError(RoverError):
    """The planet answered with the wrong tag, garbage, or nothing at all.

    Attributes:
        raw: The raw response line (None if the stream ended).
        expected: Tag(s) the caller was waiting for.
    """

    def __init__(self, message, raw=None, expected=None):
        self.raw = raw
        self.expected = expected
        super().__init__(f"{message}: {raw!r}" if raw is not None else message)


class RoverConnectionError(RoverError, ConnectionError):
    """The transport to the planet (or ground station) failed."""


class UnknownCommandError(RoverError):
    """The ground station sent a verb the rover does not understand."""

    def __init__(self, verb):
        self.verb = verb
        super().__init__(f"Unknown command: {verb}")


class BacktrackError(RoverError):
    """Stepping back along the explored path failed."""


class NotLandedError(RoverError):
    """A movement primitive was issued before the rover landed."""
