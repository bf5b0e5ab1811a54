"""Logging setup and configuration."""

from .filters import PIIFilter
from .setup import setup_logging

__all__ = ["PIIFilter", "setup_logging"]
