#!/usr/bin/env python3
"""Exoplanet rover client with a local control API.

Connects to the ground station (which assigns the robot's name), enters
orbit around the planet server, and then serves a small Flask API next to
the ground station listener:

    Ground station ──lines──► GroundStationBridge ─┐
    HTTP client ──/command──► (same dispatcher)    ├─► RoverSession ─► planet
                              ExplorationEngine ───┘

Both channels end up in the same session primitives, so an HTTP command
waits for the engine's current step just like a ground station command.
"""

import argparse
import logging
import sys

from flask import Flask, jsonify, request

from config import RoverConfig
from errors import (
    BacktrackError, BoundsError, NonAdjacentMoveError, NotLandedError,
    ProtocolError, RoverConnectionError, RoverError, UnknownCommandError,
)
from exploration import CrashPolicy, ExplorationEngine
from ground_station import GroundStationBridge, OtherRobots
from protocol import ProtocolClient
from session import RoverSession
from telemetry import TelemetryForwarder

logger = logging.getLogger(__name__)

# HTTP status per error type; anything else is a 500
ERROR_STATUS = (
    (UnknownCommandError, 400),
    (BoundsError, 409),
    (NotLandedError, 409),
    (BacktrackError, 409),
    (ProtocolError, 502),
    (RoverConnectionError, 503),
    (NonAdjacentMoveError, 500),
)

app = Flask(__name__)


def _session():
    return app.config['ROVER_SESSION']


def _engine():
    return app.config['ROVER_ENGINE']


def _bridge():
    return app.config['ROVER_BRIDGE']


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@app.errorhandler(RoverError)
def handle_rover_error(e):
    status = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(e, error_type):
            status = code
            break
    logger.warning("Request failed (%d): %s", status, e)
    return jsonify({'error': str(e), 'type': type(e).__name__}), status


# ---------------------------------------------------------------------------
# Read-only state
# ---------------------------------------------------------------------------

@app.route('/')
def index():
    return jsonify({
        'name': _session().name,
        'endpoints': {
            'GET /status': 'Session, pose, exploration progress',
            'GET /map': 'ASCII map of visited and dangerous cells',
            'GET /config': 'Current configuration',
            'POST /config': 'Update configuration at runtime',
            'POST /command': 'Run a ground station command line',
            'POST /explore': 'Start exploring in the background',
            'POST /stop': 'Stop exploring after the current step',
        },
    })


@app.route('/status')
def status():
    """Session snapshot plus engine progress."""
    result = _session().status()
    result['exploration'] = _engine().progress()
    result['ground_station'] = _bridge().connected
    return jsonify(result)


@app.route('/map')
def rover_map():
    session = _session()
    return jsonify({
        'map': session.to_text_grid(),
        'legend': {'#': 'danger', '.': 'visited', '?': 'unknown',
                   '^>v<': 'rover'},
    })


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.route('/command', methods=['POST'])
def command():
    """Run one ground station command, e.g. {"command": "land|0|0|EAST"}."""
    data = request.get_json(force=True, silent=True) or {}
    line = data.get('command')
    if not line:
        return jsonify({'error': 'Missing "command"'}), 400

    try:
        result = _bridge().dispatch(line)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'status': 'ok', **result})


@app.route('/explore', methods=['POST'])
def explore():
    engine = _engine()
    session = _session()
    if session.state is None or not session.state.landed:
        raise NotLandedError("Land before exploring")
    if not engine.start():
        return jsonify({'error': 'Exploration already running',
                        'exploration': engine.progress()}), 409
    return jsonify({'status': 'started'})


@app.route('/stop', methods=['POST'])
def stop():
    _session().stop()
    return jsonify({'status': 'ok', 'exploration': _engine().progress()})


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@app.route('/config', methods=['GET'])
def get_config():
    return jsonify(_session().config.as_dict())


@app.route('/config', methods=['POST'])
def update_config():
    """Tune exploration policy at runtime."""
    data = request.get_json(force=True, silent=True) or {}
    session = _session()
    engine = _engine()
    try:
        updated = session.config.update(**data)
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    if not updated:
        return jsonify({
            'status': 'no_change',
            'valid_keys': sorted(session.config.DEFAULTS),
        })

    if 'crash_policy' in updated:
        engine.crash_policy = CrashPolicy(updated['crash_policy'])
    if 'crash_threshold' in updated:
        engine.crash_threshold = updated['crash_threshold']
    if 'echo_planet_responses' in updated:
        session.telemetry.echo_planet_responses = updated['echo_planet_responses']
    return jsonify({'status': 'ok', 'updated': updated})


def create_app(session, engine, bridge=None):
    """Point the app at one rover session and return it."""
    if bridge is None:
        # HTTP-only: commands are dispatched without a ground station link
        bridge = GroundStationBridge(other_robots=session.other_robots)
        bridge.attach(session, engine)
    app.config['ROVER_SESSION'] = session
    app.config['ROVER_ENGINE'] = engine
    app.config['ROVER_BRIDGE'] = bridge
    return app


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(description='Exoplanet rover client')
    parser.add_argument('--config', default=None,
                        help='Path to the JSON configuration file')
    args = parser.parse_args(argv)

    config = RoverConfig(args.config)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    other_robots = OtherRobots()
    try:
        bridge = GroundStationBridge.connect(
            config.ground_station_host, config.ground_station_port,
            timeout=config.socket_timeout, other_robots=other_robots,
        )
        name = bridge.register()
        telemetry = TelemetryForwarder(bridge, config.echo_planet_responses)
        client = ProtocolClient.connect(config.planet_host, config.planet_port,
                                        timeout=config.socket_timeout)
        session = RoverSession(client, config, telemetry, other_robots)
        session.orbit(name)
    except RoverError as e:
        logger.error("Startup failed: %s", e)
        return 1

    engine = ExplorationEngine(session)
    bridge.attach(session, engine)
    bridge.start()

    create_app(session, engine, bridge)
    logger.info("Control API on http://%s:%d/", config.api_host, config.api_port)
    app.run(host=config.api_host, port=config.api_port, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
