from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when a table configuration file is missing or malformed."""


class DataLoadError(RuntimeError):
    """Raised when a call to an external system fails."""


class DbtInvocationError(DataLoadError):
    """
    Raised when the dbt executable cannot be started.

    `summary` holds the results of the tables that ran before the failure,
    when raised from a dispatch loop.
    """

    summary = None


class TargetVerificationError(RuntimeError):
    """Raised when a target table is missing after a run."""
