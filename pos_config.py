# Terminal configuration: environment variables, optionally loaded from .env
import os
import socket
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _split_csv(raw: Optional[str], default: List[str]) -> List[str]:
    parts = [p.strip() for p in (raw or "").split(",")]
    return [p for p in parts if p] or default


ROOT = os.path.dirname(os.path.abspath(__file__))

POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
POS_SCHEMA_PATH = _env_string('POS_SCHEMA_PATH', os.path.join(ROOT, 'schema.sql'))

# Central server; leaving it unset keeps the terminal in local queue-only mode.
POS_API_BASE = _env_string('POS_API_BASE')
POS_API_TOKEN = _env_string('POS_API_TOKEN')
POS_DEVICE_ID = _env_string('POS_DEVICE_ID') or socket.gethostname()

WAREHOUSE_NAME = 'Warehouse'
POS_SHOPS = _split_csv(
    _env_string('POS_SHOPS'),
    default=['Klagon Shop', 'Teshie Shop', 'Cape Coast Shop'],
)
POS_TAX_RATE = _env_float('POS_TAX_RATE', 0.125)

SYNC_TIMEOUT = _env_float('SYNC_TIMEOUT', 15.0)
SYNC_INTERVAL = _env_float('SYNC_INTERVAL', 300.0)
SYNC_PULL = _env_string('SYNC_PULL', '1') == '1'
CONNECTIVITY_PROBE_PATH = _env_string('CONNECTIVITY_PROBE_PATH', '/api/test-connection')
CONNECTIVITY_INTERVAL = _env_float('CONNECTIVITY_INTERVAL', 10.0)
CONNECTIVITY_TIMEOUT = _env_float('CONNECTIVITY_TIMEOUT', 2.0)

POS_LOG_LEVEL = (_env_string('POS_LOG_LEVEL') or 'INFO').upper()
