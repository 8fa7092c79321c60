"""Conveyor work-item orchestration package."""

from importlib import metadata

__all__ = ["cli", "core", "worker"]

try:
    __version__ = metadata.version("conveyor")
except metadata.PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
