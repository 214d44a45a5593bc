"""Planet server wire protocol.

Every exchange is one JSON object per line in each direction. The server is
strictly request/response with no correlation id, so a ProtocolClient lets
exactly one command be in flight at a time.

    -> {"CMD":"land","POSITION":{"X":0,"Y":0,"DIRECTION":"EAST"}}
    <- {"CMD":"landed","MEASURE":{"GROUND":"SAND","TEMP":21.5}}
"""

import json
import logging
import socket
import threading
from dataclasses import dataclass

from errors import ProtocolError, RoverConnectionError
from rover import Heading

logger = logging.getLogger(__name__)

# Response tags
INIT = 'init'
LANDED = 'landed'
SCANED = 'scaned'  # sic, as sent by the planet server
MOVED = 'moved'
CRASHED = 'crashed'
ROTATED = 'rotated'
POS = 'pos'

UNKNOWN_GROUND = 'unknown'
UNKNOWN_TEMP = -999.0


@dataclass(frozen=True)
class Measurement:
    """Ground type and temperature of one cell."""
    x: int
    y: int
    ground: str
    temperature: float


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_command(tag, **fields):
    """Serialize a command as a single compact JSON line (no newline)."""
    message = {'CMD': tag}
    message.update(fields)
    return json.dumps(message, separators=(',', ':'))


def orbit(name):
    return encode_command('orbit', NAME=name)


def land(x, y, heading):
    return encode_command(
        'land', POSITION={'X': x, 'Y': y, 'DIRECTION': heading.name}
    )


def scan():
    return encode_command('scan')


def move():
    return encode_command('move')


def rotate(turn):
    return encode_command('rotate', ROTATION=turn.value)


def getpos():
    return encode_command('getpos')


def exit_command():
    return encode_command('exit')


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode_line(line):
    """Parse one response line into a dict with a CMD tag.

    Raises:
        ProtocolError: empty line, invalid JSON, or no CMD field.
    """
    if line is None or not line.strip():
        raise ProtocolError("Empty response from planet", raw=line)
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        raise ProtocolError("Response is not valid JSON", raw=line) from None
    if not isinstance(message, dict) or 'CMD' not in message:
        raise ProtocolError("Response has no CMD field", raw=line)
    return message


def decode_size(response):
    """(width, height) from an init response."""
    try:
        size = response['SIZE']
        return int(size['WIDTH']), int(size['HEIGHT'])
    except (KeyError, TypeError, ValueError):
        raise ProtocolError("init response without SIZE",
                            raw=json.dumps(response)) from None


def decode_measure(response, x, y):
    """Measurement for cell (x, y), or None if the response carries no MEASURE."""
    measure = response.get('MEASURE')
    if not isinstance(measure, dict):
        return None
    ground = measure.get('GROUND', UNKNOWN_GROUND)
    try:
        temperature = float(measure.get('TEMP', UNKNOWN_TEMP))
    except (TypeError, ValueError):
        temperature = UNKNOWN_TEMP
    return Measurement(x, y, str(ground), temperature)


def decode_direction(response):
    raw = response.get('DIRECTION')
    if raw is None and isinstance(response.get('POSITION'), dict):
        raw = response['POSITION'].get('DIRECTION')
    try:
        return Heading.parse(raw)
    except ValueError:
        raise ProtocolError("Response without a valid DIRECTION",
                            raw=json.dumps(response)) from None


def decode_position(response):
    """(x, y, heading) echoed in a response, or None if absent.

    The position may sit under POSITION or directly on the response.
    """
    source = response.get('POSITION')
    if not isinstance(source, dict):
        source = response
    if 'X' not in source or 'Y' not in source:
        return None
    try:
        x, y = int(source['X']), int(source['Y'])
    except (TypeError, ValueError):
        raise ProtocolError("Response with a malformed position",
                            raw=json.dumps(response)) from None
    heading = None
    if 'DIRECTION' in source:
        heading = decode_direction(source)
    return x, y, heading


# ---------------------------------------------------------------------------
# ProtocolClient
# ---------------------------------------------------------------------------

class ProtocolClient:
    """Synchronous request/reply over a line-oriented text stream.

    Args:
        reader: Text file object the planet's responses are read from.
        writer: Text file object commands are written to.
        on_response: Optional callable receiving each raw response line.
        closer: Optional callable releasing the transport on close().
    """

    def __init__(self, reader, writer, on_response=None, closer=None):
        self._reader = reader
        self._writer = writer
        self._closer = closer
        self._lock = threading.Lock()
        self.on_response = on_response
        self.closed = False

    @classmethod
    def connect(cls, host, port, timeout=None):
        """Open a TCP connection to the planet server."""
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise RoverConnectionError(
                f"Cannot reach planet at {host}:{port}: {e}"
            ) from e
        reader = sock.makefile('r', encoding='utf-8', newline='\n')
        writer = sock.makefile('w', encoding='utf-8', newline='\n')
        logger.info("Connected to planet server %s:%s", host, port)

        def _close():
            writer.close()
            reader.close()
            sock.close()

        return cls(reader, writer, closer=_close)

    def _write(self, line):
        if self.closed:
            raise RoverConnectionError("Planet connection is closed")
        try:
            self._writer.write(line + '\n')
            self._writer.flush()
        except (OSError, ValueError) as e:
            raise RoverConnectionError(f"Failed to send {line}: {e}") from e
        logger.debug(" -> %s", line)

    def _readline(self):
        try:
            raw = self._reader.readline()
        except (OSError, ValueError) as e:
            raise RoverConnectionError(f"Failed to read from planet: {e}") from e
        logger.debug(" <- %s", raw.rstrip('\n') if raw else raw)
        if self.on_response is not None and raw:
            self.on_response(raw.rstrip('\n'))
        return raw

    def send(self, line, expect):
        """Send one command line and wait for its single response.

        Args:
            line: Encoded command (see the builders above).
            expect: Expected response tag, or a tuple of acceptable tags.

        Returns:
            The decoded response dict.

        Raises:
            ProtocolError: wrong tag, empty or undecodable response.
            RoverConnectionError: transport failure.
        """
        expected = (expect,) if isinstance(expect, str) else tuple(expect)
        with self._lock:
            self._write(line)
            raw = self._readline()
        response = decode_line(raw)
        if response['CMD'] not in expected:
            raise ProtocolError(
                f"Expected {'/'.join(expected)}, got {response['CMD']}",
                raw=raw.rstrip('\n'), expected=expected,
            )
        return response

    def send_exit(self):
        """Send exit; the planet closes the connection instead of replying."""
        with self._lock:
            self._write(exit_command())

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self._closer is not None:
            try:
                self._closer()
            except OSError as e:
                logger.warning("Error while closing planet connection: %s", e)
