"""Measurement forwarding to the ground station.

Forwarding is fire-and-forget: the exploration loop must never fail
because the ground station is away.
"""

import logging
import threading

logger = logging.getLogger(__name__)

PLANET_RESPONSE_PREFIX = '[PLANET-RESPONSE] '


def data_record(measurement):
    """Outgoing `data` record for one land/scan measurement."""
    return {
        'CMD': 'data',
        'X': measurement.x,
        'Y': measurement.y,
        'GROUND': measurement.ground,
        'TEMP': measurement.temperature,
    }


class TelemetryForwarder:
    """Pushes records out through a sink with a `send(record) -> bool` method.

    Args:
        sink: Usually the GroundStationBridge; may be None (not connected).
        echo_planet_responses: Also mirror every raw planet response line.
    """

    def __init__(self, sink=None, echo_planet_responses=False):
        self.sink = sink
        self.echo_planet_responses = echo_planet_responses
        self._lock = threading.Lock()
        self.sent = 0
        self.dropped = 0

    def _push(self, record):
        delivered = False
        if self.sink is None:
            logger.warning("Telemetry dropped, no ground station: %s", record)
        else:
            try:
                delivered = bool(self.sink.send(record))
            except Exception as e:
                logger.warning("Telemetry forwarding failed: %s", e)
            else:
                if not delivered:
                    logger.warning("Telemetry dropped, ground station not connected: %s",
                                   record)
        with self._lock:
            if delivered:
                self.sent += 1
            else:
                self.dropped += 1
        return delivered

    def forward_measurement(self, measurement):
        record = data_record(measurement)
        logger.debug("Forwarding %s", record)
        return self._push(record)

    def forward_record(self, record):
        """Forward any other status record (e.g. a manual move update)."""
        return self._push(record)

    def forward_planet_response(self, raw_line):
        if not self.echo_planet_responses:
            return False
        return self._push(PLANET_RESPONSE_PREFIX + raw_line)

    def stats(self):
        with self._lock:
            return {'sent': self.sent, 'dropped': self.dropped}
