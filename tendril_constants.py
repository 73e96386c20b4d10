"""Shared constants for Tendril Agent.

Import-safe module with no dependencies; can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

__version__ = "0.1.0"

AGENT_NAME = "tendril-agent"

DEFAULT_API_BASE = "https://api.minimax.io"
DEFAULT_MODEL = "MiniMax-M2"
DEFAULT_PROVIDER = "anthropic"

API_KEY_ENV = "TENDRIL_API_KEY"
HOME_ENV = "TENDRIL_HOME"

ACP_PROTOCOL_VERSION = 1


def get_tendril_home() -> Path:
    """User-level state directory (``$TENDRIL_HOME``, default ``~/.tendril``)."""
    return Path(os.getenv(HOME_ENV, str(Path.home() / ".tendril"))).expanduser()
