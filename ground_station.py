"""Ground station link: override commands in, telemetry out.

The ground station sends one command per line, either as a bare verb line
with a pipe-delimited payload

    land|3|4|NORTH
    update|Rover2|5|1

or wrapped in JSON, as the ground station server does:

    {"CMD": "land", "MESSAGE": "land|3|4|NORTH"}

Every command is turned into the same session primitives the exploration
engine uses, so it waits for the engine's current step to finish.
"""

import json
import logging
import socket
import threading
from dataclasses import dataclass

from errors import (
    BoundsError, NotLandedError, ProtocolError, RoverConnectionError,
    RoverError, UnknownCommandError,
)
from rover import Heading, Turn

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Other robots on the same planet
# ---------------------------------------------------------------------------

@dataclass
class OtherRobotPosition:
    name: str
    x: int
    y: int

    def update_position(self, x, y):
        self.x = x
        self.y = y


class OtherRobots:
    """Last known position of every other robot, keyed by name.

    Written by the ground station listener, read by the move planner.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._robots = {}

    def update(self, name, x, y):
        """Record a position; returns 'added' or 'updated'."""
        with self._lock:
            robot = self._robots.get(name)
            if robot is None:
                self._robots[name] = OtherRobotPosition(name, x, y)
                result = 'added'
            else:
                robot.update_position(x, y)
                result = 'updated'
        logger.info("%s position of %s: (%d, %d)", result.capitalize(), name, x, y)
        return result

    def occupied(self, cell, exclude=None):
        with self._lock:
            return any((robot.x, robot.y) == tuple(cell)
                       for robot in self._robots.values()
                       if robot.name != exclude)

    def get(self, name):
        with self._lock:
            robot = self._robots.get(name)
            return None if robot is None else (robot.x, robot.y)

    def snapshot(self):
        with self._lock:
            return [{'name': r.name, 'x': r.x, 'y': r.y}
                    for r in sorted(self._robots.values(), key=lambda r: r.name)]


# ---------------------------------------------------------------------------
# Command parsing
# ---------------------------------------------------------------------------

VERBS = ('land', 'scan', 'move', 'rotateright', 'rotateleft', 'explore',
         'update', 'disconnect', 'getpos')


def parse_command(line):
    """Split a ground station line into (verb, args).

    Raises:
        UnknownCommandError: the verb is not one the rover understands.
        ValueError: blank line.
    """
    text = line.strip()
    if not text:
        raise ValueError("Empty command")

    if text.startswith('{'):
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            raise ValueError(f"Malformed JSON command: {text}") from None
        verb = str(message.get('CMD', '')).strip().lower()
        payload = message.get('MESSAGE')
        args = str(payload).split('|')[1:] if payload else []
    else:
        parts = text.split('|')
        verb = parts[0].strip().lower()
        args = parts[1:]

    if verb not in VERBS:
        raise UnknownCommandError(verb)
    return verb, [a.strip() for a in args]


def _int_args(args, count, verb):
    if len(args) < count:
        raise ValueError(f"{verb} needs {count} arguments, got {len(args)}")
    try:
        return [int(a) for a in args[:count]]
    except ValueError:
        raise ValueError(f"{verb}: expected integers in {args}") from None


# ---------------------------------------------------------------------------
# GroundStationBridge
# ---------------------------------------------------------------------------

class GroundStationBridge:
    """Listener for ground station commands and sender of telemetry.

    Args:
        reader: Text stream of incoming command lines.
        writer: Text stream outgoing records are written to.
        other_robots: Registry updated by the `update` verb.
        closer: Optional callable releasing the transport.
    """

    def __init__(self, reader=None, writer=None, other_robots=None, closer=None):
        self._reader = reader
        self._writer = writer
        self._closer = closer
        self._write_lock = threading.Lock()
        self.other_robots = other_robots if other_robots is not None else OtherRobots()

        self.session = None
        self.engine = None
        self._thread = None
        self._listening = threading.Event()
        self.error = None

    @classmethod
    def connect(cls, host, port, timeout=None, other_robots=None):
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise RoverConnectionError(
                f"Cannot reach ground station at {host}:{port}: {e}"
            ) from e
        reader = sock.makefile('r', encoding='utf-8', newline='\n')
        writer = sock.makefile('w', encoding='utf-8', newline='\n')
        logger.info("Connected to ground station %s:%s", host, port)

        def _close():
            writer.close()
            reader.close()
            sock.close()

        return cls(reader, writer, other_robots=other_robots, closer=_close)

    def attach(self, session, engine):
        """Wire in the rover session and engine commands are dispatched to."""
        self.session = session
        self.engine = engine

    @property
    def connected(self):
        return self._writer is not None

    # -- Outbound -------------------------------------------------------------

    def send(self, record):
        """Write one record (dict -> JSON, str as-is) to the ground station.

        Returns:
            False if not connected or the write failed.
        """
        if isinstance(record, str):
            line = record
        else:
            line = json.dumps(record, separators=(',', ':'))
        with self._write_lock:
            if self._writer is None:
                return False
            try:
                self._writer.write(line + '\n')
                self._writer.flush()
            except (OSError, ValueError) as e:
                logger.warning("Send to ground station failed: %s", e)
                return False
        logger.debug("Sent to ground station: %s", line)
        return True

    def register(self):
        """Ask the ground station for this robot's name.

        Returns:
            The assigned name.

        Raises:
            ProtocolError: no reply or an empty name.
        """
        if not self.send({'CMD': 'register'}):
            raise RoverConnectionError("Cannot register, ground station not connected")
        raw = self._reader.readline()
        if not raw or not raw.strip():
            raise ProtocolError("No JSON received from ground station", raw=raw)
        try:
            name = str(json.loads(raw).get('name', '')).strip()
        except (json.JSONDecodeError, AttributeError):
            raise ProtocolError("Invalid registration reply", raw=raw) from None
        if not name:
            raise ProtocolError("Invalid robot name received", raw=raw)
        logger.info("Assigned robot name: %s", name)
        return name

    # -- Dispatch -------------------------------------------------------------

    def dispatch(self, line):
        """Execute one ground station command.

        Returns:
            dict describing the outcome.

        Raises:
            UnknownCommandError, ValueError: bad command line.
            RoverError: the primitive failed.
        """
        verb, args = parse_command(line)
        logger.info("Command from ground station: %s", line.strip())

        if verb == 'update':
            if len(args) < 3:
                raise ValueError(f"update needs 3 arguments, got {len(args)}")
            x, y = _int_args(args[1:], 2, verb)
            result = self.other_robots.update(args[0], x, y)
            return {'command': verb, 'robot': args[0], 'x': x, 'y': y,
                    'result': result}

        session = self._require_session()

        if verb == 'land':
            x, y = _int_args(args, 2, verb)
            if len(args) < 3:
                raise ValueError("land needs a direction")
            heading = Heading.parse(args[2])
            measurement = session.land(x, y, heading)
            return {'command': verb, 'pose': session.state.snapshot(),
                    'ground': measurement.ground if measurement else None}

        if verb == 'scan':
            m = session.scan()
            return {'command': verb, 'x': m.x, 'y': m.y, 'ground': m.ground,
                    'temp': m.temperature}

        if verb == 'move':
            return self._button_move()

        if verb in ('rotateright', 'rotateleft'):
            turn = Turn.RIGHT if verb == 'rotateright' else Turn.LEFT
            heading = session.rotate(turn)
            return {'command': verb, 'direction': heading.name}

        if verb == 'getpos':
            x, y, heading = session.getpos()
            return {'command': verb, 'x': x, 'y': y, 'direction': heading.name}

        if verb == 'explore':
            if session.state is None or not session.state.landed:
                raise NotLandedError("Land before exploring")
            started = self.engine.start()
            if not started:
                logger.info("Exploration already running")
            return {'command': verb, 'started': started}

        # disconnect
        self.disconnect()
        return {'command': verb, 'disconnected': True}

    def _require_session(self):
        if self.session is None:
            raise NotLandedError("No planet session attached")
        return self.session

    def _button_move(self):
        """Move one cell forward on operator request.

        Refuses off-grid, dangerous and occupied cells without sending anything.
        """
        session = self.session
        if session.state is None:
            raise NotLandedError("Rover is not in orbit")
        with session.action_lock:
            target = session.state.cell_ahead()
            if not session.grid.contains(*target):
                logger.info("Move refused, %s is outside the planet", target)
                return {'command': 'move', 'moved': False, 'reason': 'out_of_bounds'}
            if session.is_danger(target):
                logger.info("Move refused, %s is marked dangerous", target)
                return {'command': 'move', 'moved': False, 'reason': 'danger'}
            if session.is_occupied(target):
                logger.info("Move refused, another robot at %s", target)
                return {'command': 'move', 'moved': False, 'reason': 'occupied'}
            if not session.move():
                return {'command': 'move', 'moved': False, 'reason': 'crashed'}
            pose = session.state.snapshot()

        session.telemetry.forward_record({
            'CMD': 'moved',
            'X': pose['x'],
            'Y': pose['y'],
            'DIRECTION': pose['direction'],
        })
        return {'command': 'move', 'moved': True, 'pose': pose}

    def disconnect(self):
        """Stop exploring, leave the planet, and stop listening."""
        self._listening.clear()
        if self.session is not None:
            self.session.stop()
            if self.engine is not None:
                self.engine.wait()
            self.session.exit()
        self.close()

    # -- Listener -------------------------------------------------------------

    def handle_line(self, line):
        """Dispatch one line, skipping commands that only fail locally.

        Returns:
            The dispatch result, or None if the command was skipped.
        """
        try:
            return self.dispatch(line)
        except UnknownCommandError as e:
            logger.warning("%s (ignored)", e)
        except ValueError as e:
            logger.warning("Bad ground station command %r: %s", line.strip(), e)
        except (BoundsError, NotLandedError) as e:
            logger.warning("Command %r refused: %s", line.strip(), e)
        return None

    def listen(self):
        """Process commands until the stream ends, disconnect, or a planet error."""
        self._listening.set()
        try:
            while self._listening.is_set():
                try:
                    line = self._reader.readline()
                except (OSError, ValueError) as e:
                    if not self._listening.is_set():
                        break
                    raise RoverConnectionError(
                        f"Error in ground station communication: {e}") from e
                if not line:
                    logger.info("Ground station closed the connection")
                    break
                if not line.strip():
                    continue
                self.handle_line(line)
        except RoverError as e:
            self.error = e
            logger.error("Ground station listener stopped: %s", e)
        finally:
            self._listening.clear()
            self.close()

    def start(self):
        """Run listen() in a daemon thread."""
        self._listening.set()
        self._thread = threading.Thread(target=self.listen, daemon=True,
                                        name='ground-station')
        self._thread.start()
        return self._thread

    def wait(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)

    def close(self):
        if self._writer is None:
            return
        with self._write_lock:
            self._writer = None
        if self._closer is not None:
            try:
                self._closer()
            except OSError as e:
                logger.warning("Error while closing ground station link: %s", e)
