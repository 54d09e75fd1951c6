"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Every fatal condition (missing privileges, missing nginx, invalid
    configuration, failed reload) maps to ``FAILURE``; degraded metadata
    resolution is never fatal.
    """

    OK = 0
    FAILURE = 1
