"""Rover position and heading on the planet grid.

Coordinate system: x grows east, y grows south, (0, 0) is the north-west
corner. Headings are indexed NORTH=0, EAST=1, SOUTH=2, WEST=3; turning RIGHT
adds one, turning LEFT subtracts one (mod 4).
"""

import threading
from enum import Enum

from errors import BoundsError, NonAdjacentMoveError, NotLandedError


# ---------------------------------------------------------------------------
# Headings and turns
# ---------------------------------------------------------------------------

class Heading(Enum):
    NORTH = 0
    EAST = 1
    SOUTH = 2
    WEST = 3

    @property
    def delta(self):
        """(dx, dy) of one step forward in this heading."""
        return HEADING_DELTAS[self]

    def rotated(self, turn):
        step = 1 if turn is Turn.RIGHT else -1
        return Heading((self.value + step) % 4)

    @classmethod
    def parse(cls, name):
        """Heading from a wire/ground-station name, case-insensitive."""
        try:
            return cls[str(name).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown direction: {name!r}") from None


class Turn(Enum):
    LEFT = "LEFT"
    RIGHT = "RIGHT"


HEADING_DELTAS = {
    Heading.NORTH: (0, -1),
    Heading.EAST: (1, 0),
    Heading.SOUTH: (0, 1),
    Heading.WEST: (-1, 0),
}

# Neighbour search order for exploration
NEIGHBOUR_ORDER = (Heading.NORTH, Heading.EAST, Heading.SOUTH, Heading.WEST)


def plan_turn(current, target):
    """Minimal rotation sequence from `current` to `target`.

    Never more than two turns; a half turn is always RIGHT, RIGHT.
    """
    diff = (target.value - current.value + 4) % 4
    if diff == 0:
        return []
    if diff == 1:
        return [Turn.RIGHT]
    if diff == 2:
        return [Turn.RIGHT, Turn.RIGHT]
    return [Turn.LEFT]


def heading_between(origin, target):
    """Heading that leads from `origin` to the adjacent cell `target`."""
    dx = target[0] - origin[0]
    dy = target[1] - origin[1]
    for heading, delta in HEADING_DELTAS.items():
        if delta == (dx, dy):
            return heading
    raise NonAdjacentMoveError(f"{target} is not adjacent to {origin}")


# ---------------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------------

class Grid:
    """Planet bounds, fixed by the server's init response."""

    def __init__(self, width, height):
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid planet size {width}x{height}")
        self.width = width
        self.height = height

    def __eq__(self, other):
        return (isinstance(other, Grid)
                and (self.width, self.height) == (other.width, other.height))

    def __repr__(self):
        return f"Grid({self.width}, {self.height})"

    def contains(self, x, y):
        return 0 <= x < self.width and 0 <= y < self.height

    def check(self, x, y):
        if not self.contains(x, y):
            raise BoundsError(x, y, self.width, self.height)

    def neighbours(self, x, y):
        """In-bounds neighbours of (x, y) in N, E, S, W order."""
        result = []
        for heading in NEIGHBOUR_ORDER:
            dx, dy = heading.delta
            nx, ny = x + dx, y + dy
            if self.contains(nx, ny):
                result.append((nx, ny))
        return result

    def cells(self):
        return [(x, y) for y in range(self.height) for x in range(self.width)]


# ---------------------------------------------------------------------------
# RoverState
# ---------------------------------------------------------------------------

class RoverState:
    """Position and heading of the rover.

    Only ever mutated with values the planet server has already confirmed.
    Until `apply_landing` succeeds, `position` and `heading` are None.
    """

    def __init__(self, grid):
        self._lock = threading.Lock()
        self.grid = grid
        self.position = None
        self.heading = None

    @property
    def landed(self):
        return self.position is not None

    def _require_landed(self):
        if not self.landed:
            raise NotLandedError("Rover has not landed yet")

    def apply_landing(self, x, y, heading):
        self.grid.check(x, y)
        with self._lock:
            self.position = (x, y)
            self.heading = heading

    def plan_turn(self, target):
        self._require_landed()
        return plan_turn(self.heading, target)

    def heading_towards(self, target):
        """Heading needed to step onto `target`, which must be adjacent."""
        self._require_landed()
        return heading_between(self.position, target)

    def cell_ahead(self):
        """The cell the rover is facing (may be off-grid)."""
        self._require_landed()
        dx, dy = self.heading.delta
        return (self.position[0] + dx, self.position[1] + dy)

    def apply_move(self, x, y):
        self.grid.check(x, y)
        with self._lock:
            self.position = (x, y)

    def apply_rotation(self, heading):
        with self._lock:
            self.heading = heading

    def snapshot(self):
        """Return current pose as a dict (thread-safe)."""
        with self._lock:
            if self.position is None:
                return {'x': None, 'y': None, 'direction': None}
            return {
                'x': self.position[0],
                'y': self.position[1],
                'direction': self.heading.name,
            }
