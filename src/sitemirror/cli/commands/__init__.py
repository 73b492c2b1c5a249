"""CLI commands for sitemirror."""

from .clone import cancel, clone, pause, resume
from .config import config
from .status import status
from .worker import worker

__all__ = [
    "clone",
    "resume",
    "pause",
    "cancel",
    "status",
    "worker",
    "config",
]
