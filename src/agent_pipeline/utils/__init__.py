"""Shared utility functions for the agent pipeline."""

from .atomic_io import atomic_write_json, read_json
from .process_utils import force_kill, kill_process_tree
from .rich_logging import ContextLogger, get_context_logger, setup_rich_logging

__all__ = [
    "atomic_write_json",
    "force_kill",
    "kill_process_tree",
    "read_json",
    "ContextLogger",
    "get_context_logger",
    "setup_rich_logging",
]
