"""
Utility modules for aptflow: logging setup and styled terminal output.
"""

from . import console
from .logging_config import setup_logging

__all__ = [
    "console",
    "setup_logging",
]
