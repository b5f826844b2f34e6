# Configuration - defaults, config.json, environment overrides
# Loaded once at startup by main.py and handed to each component as plain values

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent.parent / 'config.json'

DEFAULTS: Dict[str, Any] = {
    'machine_id': 'dev-pi-001',
    'api_endpoint': '',
    'machine_token': '',
    'env_file': '.env',
    'serial_port': '/dev/ttyUSB0',
    'serial_baud': 9600,
    'printer_port': None,
    'db_path': 'data/edge_agent.db',
    'sync_interval': 30,
    'sync_startup_delay': 5,
    'sync_batch_size': 10,
    'max_attempts': 5,
    'max_records': 10000,
    'retention_days': 7,
    'heartbeat_interval': 30,
    'http_timeout': 10,
    'assembly_timeout_ms': 2000,
    'infer_missing_machine': True,
    'bootstrap_machine': '29',
    'enable_serial_logging': False,
    'capture_dir': 'data/serial-logs',
    'mock_mode': False,
    'log_level': 'info',
    'log_path': None,
}

# env var -> (config key, type)
ENV_OVERRIDES = {
    'MACHINE_ID': ('machine_id', str),
    'API_ENDPOINT': ('api_endpoint', str),
    'MACHINE_TOKEN': ('machine_token', str),
    'SERIAL_PORT': ('serial_port', str),
    'PRINTER_PORT': ('printer_port', str),
    'DB_PATH': ('db_path', str),
    'ENABLE_SERIAL_LOGGING': ('enable_serial_logging', bool),
    'MOCK_MODE': ('mock_mode', bool),
    'LOG_LEVEL': ('log_level', str),
}

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _coerce(value: str, typ):
    if typ is bool:
        return value.strip().lower() in _TRUE_VALUES
    return typ(value)


def load_config(path: Optional[Path] = None,
                environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Merge DEFAULTS <- JSON file <- environment and return a plain dict."""
    config = dict(DEFAULTS)
    config_path = Path(path) if path else CONFIG_PATH

    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = json.load(f)
            if isinstance(file_config, dict):
                config.update(file_config)
                logger.info("Configuration loaded from %s", config_path)
            else:
                logger.error("Ignoring %s: top level must be an object", config_path)
        except (OSError, ValueError) as e:
            logger.error("Failed to load configuration from %s: %s", config_path, e)

    environ = os.environ if environ is None else environ
    for var, (key, typ) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == '':
            continue
        try:
            config[key] = _coerce(raw, typ)
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", var, raw)

    return config
