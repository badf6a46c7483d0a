"""Exception types raised by the orchestrator core and its adapters."""

from __future__ import annotations


class HedgeFundError(Exception):
    """Base class for all hedgefund errors."""


class InvalidStateError(HedgeFundError, RuntimeError):
    """An orchestrator operation was called from a state that does not allow it."""


class AdvisoryError(HedgeFundError):
    """The advisory oracle could not produce a usable response."""


class ConfigError(HedgeFundError, ValueError):
    """Configuration failed validation."""
