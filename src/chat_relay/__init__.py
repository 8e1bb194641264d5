"""Chat relay: conversation memory and context trimming in front of a local LLM.

The package provides a FastAPI application factory named ``create_app``
inside ``chat_relay/server.py``.

Typical usage
-------------
from chat_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 3001
"""

from __future__ import annotations

from .server import create_app

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "1.0.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
