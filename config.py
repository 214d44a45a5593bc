"""Rover client configuration, persisted as JSON.

A missing or unreadable file just means defaults; nothing here is required
for the rover to run.
"""

import json
import logging
import os
import time

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.expanduser('~/exoplanet-rover/config.json')


class RoverConfig:
    """Connection endpoints and exploration policy knobs.

    Attributes mirror DEFAULTS; unknown keys in the file are ignored.
    """

    DEFAULTS = {
        'robot_name': 'Rover',
        'planet_host': 'localhost',
        'planet_port': 8150,
        'ground_station_host': 'localhost',
        'ground_station_port': 9000,
        'api_host': '0.0.0.0',
        'api_port': 5000,
        'socket_timeout': None,
        'crash_policy': 'mark_after_repeat',
        'crash_threshold': 2,
        # NICHTS is the planet server's marker for the void
        'hazard_grounds': ['LAVA', 'NICHTS', 'VOID'],
        'echo_planet_responses': False,
        'log_level': 'INFO',
    }

    CRASH_POLICIES = ('mark_danger', 'mark_after_repeat')

    def __init__(self, persist_path=None, **overrides):
        if persist_path is None:
            persist_path = DEFAULT_CONFIG_PATH
        self._persist_path = persist_path

        for key, value in self.DEFAULTS.items():
            setattr(self, key, list(value) if isinstance(value, list) else value)

        self._load()
        self.update(**overrides)

    def _load(self):
        """Load settings from disk if the file exists."""
        try:
            with open(self._persist_path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable config %s: %s",
                           self._persist_path, e)
            return
        if isinstance(data, dict):
            self.update(**data)

    def save(self):
        """Persist current settings to disk."""
        data = self.as_dict()
        data['updated_at'] = time.time()
        directory = os.path.dirname(self._persist_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self._persist_path, 'w') as f:
            json.dump(data, f, indent=2)

    def as_dict(self):
        return {key: getattr(self, key) for key in self.DEFAULTS}

    def update(self, **kwargs):
        """Change settings at runtime.

        Returns:
            dict of settings that were actually updated.
        """
        updated = {}
        for key, value in kwargs.items():
            if key not in self.DEFAULTS:
                continue
            if key in ('planet_port', 'ground_station_port', 'api_port',
                       'crash_threshold'):
                value = int(value)
            elif key == 'socket_timeout':
                value = None if value is None else float(value)
            elif key == 'echo_planet_responses':
                value = bool(value)
            elif key == 'hazard_grounds':
                value = [str(g).upper() for g in value]
            elif key == 'crash_policy':
                value = str(value).lower()
                if value not in self.CRASH_POLICIES:
                    raise ValueError(
                        f"Unknown crash policy {value!r}, "
                        f"expected one of {self.CRASH_POLICIES}"
                    )
            elif key == 'log_level':
                value = str(value).upper()
            if key == 'crash_threshold' and value < 1:
                raise ValueError("crash_threshold must be at least 1")
            setattr(self, key, value)
            updated[key] = value
        return updated
