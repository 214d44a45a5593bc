import io
import json

import pytest

import protocol
from errors import ProtocolError, RoverConnectionError
from protocol import ProtocolClient
from rover import Heading, Turn


class ScriptedStream:
    """Writer/reader pair replaying canned response lines."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.written = []

    def write(self, data):
        self.written.append(data)

    def flush(self):
        pass

    def readline(self):
        return self.responses.pop(0) if self.responses else ''


class BrokenStream(ScriptedStream):
    def write(self, data):
        raise BrokenPipeError("peer went away")


def test_commands_are_single_line_json_with_cmd_first():
    line = protocol.land(3, 4, Heading.NORTH)
    assert '\n' not in line
    assert line.startswith('{"CMD":"land"')
    assert json.loads(line) == {
        'CMD': 'land', 'POSITION': {'X': 3, 'Y': 4, 'DIRECTION': 'NORTH'},
    }
    assert json.loads(protocol.orbit('Bot')) == {'CMD': 'orbit', 'NAME': 'Bot'}
    assert json.loads(protocol.rotate(Turn.LEFT)) == {'CMD': 'rotate', 'ROTATION': 'LEFT'}
    assert json.loads(protocol.scan()) == {'CMD': 'scan'}
    assert json.loads(protocol.exit_command()) == {'CMD': 'exit'}


def test_land_command_and_landed_response_keep_semantic_fields():
    request = json.loads(protocol.land(2, 5, Heading.WEST))
    canned = {
        'CMD': 'landed',
        'POSITION': request['POSITION'],
        'MEASURE': {'GROUND': 'GEROELL', 'TEMP': -12.5},
    }
    response = protocol.decode_line(json.dumps(canned))

    assert protocol.decode_position(response) == (2, 5, Heading.WEST)
    measurement = protocol.decode_measure(response, 2, 5)
    assert measurement.ground == 'GEROELL'
    assert measurement.temperature == -12.5


def test_decode_position_top_level_and_missing():
    assert protocol.decode_position(
        {'CMD': 'pos', 'X': 1, 'Y': 2, 'DIRECTION': 'SOUTH'}) == (1, 2, Heading.SOUTH)
    assert protocol.decode_position({'CMD': 'moved'}) is None


def test_decode_measure_defaults():
    m = protocol.decode_measure({'CMD': 'scaned', 'MEASURE': {}}, 0, 1)
    assert (m.ground, m.temperature) == (protocol.UNKNOWN_GROUND, protocol.UNKNOWN_TEMP)
    assert protocol.decode_measure({'CMD': 'landed'}, 0, 0) is None


def test_decode_size():
    assert protocol.decode_size({'CMD': 'init', 'SIZE': {'WIDTH': 10, 'HEIGHT': 6}}) == (10, 6)
    with pytest.raises(ProtocolError):
        protocol.decode_size({'CMD': 'init'})


def test_send_returns_decoded_response_and_writes_one_line():
    stream = ScriptedStream('{"CMD":"rotated","DIRECTION":"SOUTH"}\n')
    client = ProtocolClient(stream, stream)

    response = client.send(protocol.rotate(Turn.RIGHT), protocol.ROTATED)

    assert response == {'CMD': 'rotated', 'DIRECTION': 'SOUTH'}
    assert stream.written == ['{"CMD":"rotate","ROTATION":"RIGHT"}\n']


def test_send_accepts_any_of_several_tags():
    stream = ScriptedStream('{"CMD":"crashed"}\n')
    client = ProtocolClient(stream, stream)
    response = client.send(protocol.move(), (protocol.MOVED, protocol.CRASHED))
    assert response['CMD'] == 'crashed'


def test_tag_mismatch_raises_protocol_error_with_raw_text():
    stream = ScriptedStream('{"CMD":"moved"}\n')
    client = ProtocolClient(stream, stream)

    with pytest.raises(ProtocolError) as excinfo:
        client.send(protocol.scan(), protocol.SCANED)

    assert excinfo.value.raw == '{"CMD":"moved"}'
    assert excinfo.value.expected == ('scaned',)


@pytest.mark.parametrize('raw', ['', '\n', 'not json\n', '[1, 2]\n', '{"X": 1}\n'])
def test_empty_or_garbage_response_raises_protocol_error(raw):
    client = ProtocolClient(ScriptedStream(raw), ScriptedStream())
    with pytest.raises(ProtocolError):
        client.send(protocol.scan(), protocol.SCANED)


def test_transport_failure_raises_connection_error():
    stream = BrokenStream()
    client = ProtocolClient(stream, stream)
    with pytest.raises(RoverConnectionError):
        client.send(protocol.scan(), protocol.SCANED)
    assert isinstance(RoverConnectionError("x"), ConnectionError)


def test_closed_client_refuses_to_send():
    closed = []
    stream = ScriptedStream('{"CMD":"scaned"}\n')
    client = ProtocolClient(stream, stream, closer=lambda: closed.append(True))
    client.close()
    client.close()
    assert closed == [True]
    with pytest.raises(RoverConnectionError):
        client.send(protocol.scan(), protocol.SCANED)


def test_response_listener_sees_raw_lines():
    seen = []
    stream = ScriptedStream('{"CMD":"pos","X":0,"Y":0,"DIRECTION":"EAST"}\n')
    client = ProtocolClient(stream, stream, on_response=seen.append)
    client.send(protocol.getpos(), protocol.POS)
    assert seen == ['{"CMD":"pos","X":0,"Y":0,"DIRECTION":"EAST"}']


def test_exit_does_not_wait_for_a_reply():
    reader = io.StringIO('')
    writer = io.StringIO()
    client = ProtocolClient(reader, writer)
    client.send_exit()
    assert writer.getvalue() == '{"CMD":"exit"}\n'


def test_replies_buffered_together_over_a_socket_are_not_lost(listener):
    host, port = listener.getsockname()
    client = ProtocolClient.connect(host, port, timeout=5)
    planet, _ = listener.accept()
    planet.settimeout(5)
    try:
        planet.sendall(b'{"CMD":"scaned","MEASURE":{"GROUND":"SAND","TEMP":1.0}}\n'
                       b'{"CMD":"rotated","DIRECTION":"EAST"}\n')

        assert client.send(protocol.scan(), protocol.SCANED)['CMD'] == 'scaned'
        response = client.send(protocol.rotate(Turn.RIGHT), protocol.ROTATED)
        assert response['DIRECTION'] == 'EAST'

        client.close()
        with planet.makefile('r', encoding='utf-8') as stream:
            requests = [json.loads(line)['CMD'] for line in stream.read().splitlines()]
    finally:
        planet.close()

    assert requests == ['scan', 'rotate']
