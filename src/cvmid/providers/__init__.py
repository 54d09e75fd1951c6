"""Provider interfaces for cvmid."""
from __future__ import annotations

from .installer import (
    DistroInfo,
    InstallError,
    InstallStep,
    NginxInstaller,
    UnsupportedDistroError,
    VerificationCheck,
)
from .nginx import CleanupResult, NginxError, NginxProvider

__all__ = [
    "CleanupResult",
    "DistroInfo",
    "InstallError",
    "InstallStep",
    "NginxError",
    "NginxInstaller",
    "NginxProvider",
    "UnsupportedDistroError",
    "VerificationCheck",
]
