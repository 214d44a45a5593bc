"""Shared fixtures: an in-memory planet server speaking the wire protocol."""

import io
import json
import socket
from collections import deque

import pytest

from config import RoverConfig
from ground_station import GroundStationBridge, OtherRobots
from protocol import ProtocolClient
from rover import Heading
from session import RoverSession
from telemetry import TelemetryForwarder

DELTAS = {'NORTH': (0, -1), 'EAST': (1, 0), 'SOUTH': (0, 1), 'WEST': (-1, 0)}
ORDER = ['NORTH', 'EAST', 'SOUTH', 'WEST']
HAZARDS = ('LAVA', 'NICHTS')


class FakePlanet:
    """Scripted planet server. Acts as both the reader and the writer stream.

    Args:
        width, height: Planet size.
        terrain: {(x, y): ground}; unlisted cells are SAND.
        crash_cells: Cells a move into always answers `crashed`.
        echo_position: Include POSITION in `moved` responses.
    """

    def __init__(self, width, height, terrain=None, crash_cells=(),
                 echo_position=True):
        self.width = width
        self.height = height
        self.terrain = dict(terrain or {})
        self.crash_cells = set(crash_cells)
        self.echo_position = echo_position
        self.position = None
        self.direction = None
        self.requests = []
        self.moves = []
        self.override = {}
        self._pending = deque()

    # -- stream interface -----------------------------------------------------

    def write(self, data):
        for line in data.splitlines():
            if line.strip():
                self.requests.append(json.loads(line))
                self._pending.append(self._respond(self.requests[-1]))

    def flush(self):
        pass

    def readline(self):
        if not self._pending:
            return ''
        response = self._pending.popleft()
        if response is None:
            return ''
        return response + '\n'

    # -- planet behaviour -----------------------------------------------------

    def ground(self, x, y):
        if not (0 <= x < self.width and 0 <= y < self.height):
            return 'NICHTS'
        return self.terrain.get((x, y), 'SAND')

    def _ahead(self):
        dx, dy = DELTAS[self.direction]
        return self.position[0] + dx, self.position[1] + dy

    def _respond(self, request):
        cmd = request['CMD']
        if self.override.get(cmd):
            return self.override[cmd].popleft()
        if cmd == 'orbit':
            return json.dumps({'CMD': 'init',
                               'SIZE': {'WIDTH': self.width, 'HEIGHT': self.height}})
        if cmd == 'land':
            pos = request['POSITION']
            self.position = (pos['X'], pos['Y'])
            self.direction = pos['DIRECTION']
            return json.dumps({'CMD': 'landed', 'MEASURE': {
                'GROUND': self.ground(*self.position), 'TEMP': 20.0}})
        if cmd == 'scan':
            x, y = self._ahead()
            return json.dumps({'CMD': 'scaned', 'MEASURE': {
                'GROUND': self.ground(x, y), 'TEMP': 10.0 + x + y}})
        if cmd == 'rotate':
            step = 1 if request['ROTATION'] == 'RIGHT' else -1
            self.direction = ORDER[(ORDER.index(self.direction) + step) % 4]
            return json.dumps({'CMD': 'rotated', 'DIRECTION': self.direction})
        if cmd == 'move':
            target = self._ahead()
            self.moves.append(target)
            if target in self.crash_cells or self.ground(*target) in HAZARDS:
                return json.dumps({'CMD': 'crashed'})
            self.position = target
            response = {'CMD': 'moved'}
            if self.echo_position:
                response['POSITION'] = {'X': target[0], 'Y': target[1],
                                        'DIRECTION': self.direction}
            return json.dumps(response)
        if cmd == 'getpos':
            return json.dumps({'CMD': 'pos', 'POSITION': {
                'X': self.position[0], 'Y': self.position[1],
                'DIRECTION': self.direction}})
        if cmd == 'exit':
            return None
        return json.dumps({'CMD': 'error', 'MESSAGE': f'unknown {cmd}'})

    def override_next(self, cmd, raw):
        """Answer the next `cmd` request with `raw` instead of the usual reply."""
        self.override.setdefault(cmd, deque()).append(raw)

    def sent(self, cmd):
        return [r for r in self.requests if r['CMD'] == cmd]


class RecordingSink:
    """Stands in for the ground station's outbound side."""

    def __init__(self, connected=True):
        self.connected = connected
        self.records = []

    def send(self, record):
        if not self.connected:
            return False
        self.records.append(record)
        return True

    def data_records(self):
        return [r for r in self.records if isinstance(r, dict) and r.get('CMD') == 'data']


@pytest.fixture
def config(tmp_path):
    return RoverConfig(persist_path=str(tmp_path / 'config.json'))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_session(config, sink):
    """Build a session in orbit around a FakePlanet, optionally landed."""

    def _make(width, height, terrain=None, land=None, **planet_kwargs):
        planet = FakePlanet(width, height, terrain, **planet_kwargs)
        client = ProtocolClient(planet, planet)
        telemetry = TelemetryForwarder(sink)
        session = RoverSession(client, config, telemetry, OtherRobots())
        session.orbit('TestBot')
        if land is not None:
            x, y, heading = land
            session.land(x, y, Heading.parse(heading))
        return session, planet

    return _make


@pytest.fixture
def make_bridge():
    """Bridge wired to a session, with in-memory ground station streams."""

    def _make(session, engine, lines=()):
        reader = io.StringIO(''.join(line + '\n' for line in lines))
        writer = io.StringIO()
        bridge = GroundStationBridge(reader, writer, other_robots=session.other_robots)
        bridge.attach(session, engine)
        session.telemetry.sink = bridge
        return bridge, writer

    return _make


@pytest.fixture
def listener():
    """Listening localhost socket standing in for a remote server."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(1)
    server.settimeout(5)
    yield server
    server.close()
