"""
Settings for the fetch engine and the download server.

Values come from a YAML file (spider/config.yaml unless $SPIDER_CONFIG names
another one); environment variables listed in ENV_OVERRIDES win over it.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key)
ENV_OVERRIDES = {
    'SPIDER_TIMEOUT': ('fetcher', 'timeout'),
    'SPIDER_SOURCE_IP': ('fetcher', 'source_ip'),
    'SPIDER_PROXY': ('fetcher', 'proxy'),
    'SPIDER_FOLLOW_REDIRECTS': ('fetcher', 'follow_redirects'),
    'SPIDER_COOKIE_JAR': ('fetcher', 'cookie_jar'),
    'SPIDER_MAX_BODY_SIZE': ('fetcher', 'max_body_size'),
    'SERVER_HOST': ('server', 'host'),
    'SERVER_PORT': ('server', 'port'),
    'LOG_LEVEL': ('logging', 'level'),
    'LOG_FORMAT': ('logging', 'format'),
}


def _coerce(value: str):
    """Turn an environment string into a bool, int or float when it looks like one."""
    if value.lower() in ('true', 'false'):
        return value.lower() == 'true'

    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


class Config:
    """Sectioned settings: `fetcher`, `server` and `logging`."""

    def __init__(self, config_path: str = None):
        self.config_path = Path(config_path or os.getenv('SPIDER_CONFIG') or DEFAULT_CONFIG_PATH)
        self._sections = self._read_file()
        self._apply_env()

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

    def _apply_env(self):
        for env_var, (section, key) in ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            if not isinstance(self._sections.get(section), dict):
                self._sections[section] = {}
            self._sections[section][key] = _coerce(value)

    def section(self, name: str) -> Dict[str, Any]:
        """Return one top-level section, or an empty dict when it is absent."""
        return self._sections.get(name) or {}

    @property
    def fetcher(self) -> Dict[str, Any]:
        return self.section('fetcher')

    @property
    def server(self) -> Dict[str, Any]:
        return self.section('server')

    @property
    def logging(self) -> Dict[str, Any]:
        return self.section('logging')
