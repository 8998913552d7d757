"""Utility helpers for the relay and the agent."""

from .config import load_config
from .logging import configure_logging

__all__ = ["configure_logging", "load_config"]
