"""One rover's connection to the planet and everything it has learned.

RoverSession owns all mutable per-connection state and is the only way to
issue primitive actions (orbit, land, scan, move, rotate, getpos, exit).
The exploration engine and the ground-station bridge both go through it, so
its re-entrant action lock is what keeps them from interleaving on the
planet connection.
"""

import logging
import threading

import protocol
from config import RoverConfig
from errors import (
    BoundsError, NotLandedError, ProtocolError, RoverConnectionError,
)
from ground_station import OtherRobots
from rover import Grid, RoverState
from telemetry import TelemetryForwarder

logger = logging.getLogger(__name__)


class RoverSession:
    """Shared, lock-guarded state of one connected rover.

    Args:
        client: ProtocolClient connected to the planet server.
        config: RoverConfig (defaults if omitted).
        telemetry: TelemetryForwarder for land/scan measurements.
        other_robots: OtherRobots registry shared with the bridge.
    """

    def __init__(self, client, config=None, telemetry=None, other_robots=None):
        self.client = client
        self.config = config if config is not None else RoverConfig()
        self.telemetry = telemetry if telemetry is not None else TelemetryForwarder(
            echo_planet_responses=self.config.echo_planet_responses)
        self.other_robots = other_robots if other_robots is not None else OtherRobots()

        if self.client.on_response is None:
            self.client.on_response = self.telemetry.forward_planet_response

        self.name = None
        self.grid = None
        self.state = None
        self.visited = set()
        self.danger = set()
        self.measurements = {}

        # Held for each primitive; the engine holds it across a whole step
        self.action_lock = threading.RLock()
        self._map_lock = threading.Lock()
        self._running = threading.Event()
        self.connected = True

    # -- Run flag -------------------------------------------------------------

    @property
    def running(self):
        return self._running.is_set()

    def resume(self):
        """Re-arm the run flag; False if the planet connection is gone."""
        if self.connected:
            self._running.set()
        return self.connected

    def stop(self):
        """Ask the exploration loop to finish after its current step."""
        if self._running.is_set():
            logger.info("Stop requested")
        self._running.clear()

    # -- Map bookkeeping ------------------------------------------------------

    def is_hazard(self, ground):
        return str(ground).upper() in self.config.hazard_grounds

    def mark_visited(self, cell):
        with self._map_lock:
            if cell in self.danger:
                return False
            self.visited.add(cell)
            return True

    def mark_danger(self, cell):
        with self._map_lock:
            self.danger.add(cell)
        logger.info("Marked %s as dangerous", cell)

    def is_visited(self, cell):
        with self._map_lock:
            return cell in self.visited

    def is_danger(self, cell):
        with self._map_lock:
            return cell in self.danger

    def is_occupied(self, cell):
        return self.other_robots.occupied(cell, exclude=self.name)

    def _record(self, measurement):
        if self.grid is not None and self.grid.contains(measurement.x, measurement.y):
            with self._map_lock:
                self.measurements[(measurement.x, measurement.y)] = measurement
                if self.is_hazard(measurement.ground):
                    self.danger.add((measurement.x, measurement.y))
        self.telemetry.forward_measurement(measurement)

    def map_snapshot(self):
        with self._map_lock:
            return {
                'visited': sorted(self.visited),
                'danger': sorted(self.danger),
                'measured': len(self.measurements),
            }

    # -- Transport ------------------------------------------------------------

    def _send(self, line, expect):
        if not self.connected:
            raise RoverConnectionError("Rover is disconnected")
        try:
            return self.client.send(line, expect)
        except RoverConnectionError:
            self._mark_disconnected()
            raise

    def _mark_disconnected(self):
        self.connected = False
        self._running.clear()

    def _require_landed(self):
        if self.state is None or not self.state.landed:
            raise NotLandedError("Rover has not landed yet")

    # -- Primitive actions ----------------------------------------------------

    def orbit(self, name):
        """Enter orbit and learn the planet size.

        Returns:
            The planet Grid.
        """
        with self.action_lock:
            response = self._send(protocol.orbit(name), protocol.INIT)
            width, height = protocol.decode_size(response)
            self.name = name
            self.grid = Grid(width, height)
            self.state = RoverState(self.grid)
            with self._map_lock:
                self.visited = set()
                self.danger = set()
                self.measurements = {}
            self._running.set()
        logger.info("%s in orbit, planet size %d x %d", name, width, height)
        return self.grid

    def land(self, x, y, heading):
        """Land at (x, y) facing `heading`.

        Raises:
            BoundsError: (x, y) is off the planet; nothing is sent.
        """
        if self.grid is None:
            raise NotLandedError("Rover is not in orbit")
        if not self.grid.contains(x, y):
            raise BoundsError(x, y, self.grid.width, self.grid.height)

        with self.action_lock:
            response = self._send(protocol.land(x, y, heading), protocol.LANDED)
            self.state.apply_landing(x, y, heading)
            measurement = protocol.decode_measure(response, x, y)
            if measurement is not None:
                self._record(measurement)
            # A hazardous landing cell stays in danger only
            self.mark_visited((x, y))
        logger.info("Landed on (%d,%d) facing %s", x, y, heading.name)
        return measurement

    def scan(self):
        """Scan the cell in front of the rover.

        Returns:
            Measurement of the cell ahead.
        """
        with self.action_lock:
            self._require_landed()
            x, y = self.state.cell_ahead()
            response = self._send(protocol.scan(), protocol.SCANED)
        measurement = protocol.decode_measure(response, x, y)
        if measurement is None:
            measurement = protocol.Measurement(
                x, y, protocol.UNKNOWN_GROUND, protocol.UNKNOWN_TEMP)
        logger.info("Scanned (%d,%d): %s", x, y, measurement.ground)
        self._record(measurement)
        return measurement

    def move(self):
        """Move one cell forward.

        Returns:
            True if the planet confirmed the move, False on `crashed`.
        """
        with self.action_lock:
            self._require_landed()
            target = self.state.cell_ahead()
            response = self._send(protocol.move(),
                                  (protocol.MOVED, protocol.CRASHED))
            if response['CMD'] == protocol.CRASHED:
                logger.warning("Crashed moving into %s", target)
                return False

            echoed = protocol.decode_position(response)
            if echoed is not None:
                x, y, heading = echoed
                self.state.apply_move(x, y)
                if heading is not None:
                    self.state.apply_rotation(heading)
            else:
                self.state.apply_move(*target)
        logger.info("Moved to %s", self.state.position)
        return True

    def rotate(self, turn):
        """Turn 90 degrees; returns the confirmed heading."""
        with self.action_lock:
            self._require_landed()
            response = self._send(protocol.rotate(turn), protocol.ROTATED)
            if 'DIRECTION' in response:
                heading = protocol.decode_direction(response)
            else:
                heading = self.state.heading.rotated(turn)
            self.state.apply_rotation(heading)
        logger.debug("Rotated %s, now facing %s", turn.value, heading.name)
        return heading

    def getpos(self):
        """Ask the planet where the rover is and adopt its answer."""
        with self.action_lock:
            if self.state is None:
                raise NotLandedError("Rover is not in orbit")
            response = self._send(protocol.getpos(), protocol.POS)
            echoed = protocol.decode_position(response)
            if echoed is None or echoed[2] is None:
                raise ProtocolError("pos response without position",
                                raw=str(response))
            x, y, heading = echoed
            self.state.apply_landing(x, y, heading)
        logger.info("Current position: (%d, %d), facing %s", x, y, heading.name)
        return x, y, heading

    def exit(self):
        """Leave the planet and close the connection."""
        self._running.clear()
        with self.action_lock:
            if not self.connected:
                return
            try:
                self.client.send_exit()
            except RoverConnectionError as e:
                logger.warning("Exit not delivered: %s", e)
            finally:
                self.client.close()
                self._mark_disconnected()
        logger.info("Robot %s disconnected from planet server", self.name)

    # -- State ----------------------------------------------------------------

    def status(self):
        """Read-only snapshot for the control API."""
        result = {
            'name': self.name,
            'connected': self.connected,
            'running': self.running,
            'grid': None,
            'pose': None,
        }
        if self.grid is not None:
            result['grid'] = {'width': self.grid.width, 'height': self.grid.height}
        if self.state is not None:
            result['pose'] = self.state.snapshot()
        result.update(self.map_snapshot())
        result['telemetry'] = self.telemetry.stats()
        result['other_robots'] = self.other_robots.snapshot()
        return result

    def to_text_grid(self):
        """ASCII map: '#'=danger, '.'=visited, '?'=unknown, arrow=rover."""
        if self.grid is None:
            return ''
        arrows = {'NORTH': '^', 'EAST': '>', 'SOUTH': 'v', 'WEST': '<'}
        pose = self.state.snapshot() if self.state is not None else {}
        rover_cell = (pose.get('x'), pose.get('y'))
        lines = []
        with self._map_lock:
            for y in range(self.grid.height):
                row = []
                for x in range(self.grid.width):
                    if (x, y) == rover_cell:
                        row.append(arrows[pose['direction']])
                    elif (x, y) in self.danger:
                        row.append('#')
                    elif (x, y) in self.visited:
                        row.append('.')
                    else:
                        row.append('?')
                lines.append(''.join(row))
        return '\n'.join(lines)
