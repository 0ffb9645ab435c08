"""
RxScope Configuration
=====================

Controls what gets tracked and how much history is kept. The defaults are
tuned for development use: everything is tracked and the subscription archive
keeps the last thousand torn-down subscriptions for five minutes.

Values can be read from ``RXSCOPE_*`` environment variables with
``TrackingConfig.from_env()``.
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

ENV_PREFIX = "RXSCOPE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class TrackingConfig:
    """
    Tracking configuration.

    Attributes:
        enabled: Master switch. When False, hooks pass straight through.
        track_emissions: Record an EmissionRecord for every ``on_next``.
        track_errors: Record an ErrorRecord for every ``on_error``.
        track_completions: Stamp ``completed_at`` on completed subscriptions.
        max_emissions_per_subscription: Emission records kept per
            subscription before further emissions are skipped (0 = unlimited).
        capture_locations: Capture the caller's file and line on construction.
        max_archived_subscriptions: Archive count cap enforced by cleanup.
        max_archive_age: Seconds an archived subscription is retained.
        cleanup_interval: Seconds between automatic archive cleanups.
        max_diagnostics: Diagnostics kept in memory.
        max_event_history: Published events kept in the replay buffer.
    """

    enabled: bool = True
    track_emissions: bool = True
    track_errors: bool = True
    track_completions: bool = True
    max_emissions_per_subscription: int = 1000
    capture_locations: bool = True
    max_archived_subscriptions: int = 1000
    max_archive_age: float = 300.0
    cleanup_interval: float = 60.0
    max_diagnostics: int = 1000
    max_event_history: int = 10000

    def with_changes(self, **changes: Any) -> "TrackingConfig":
        """Return a copy with ``changes`` applied. Unknown names raise TypeError."""
        return replace(self, **changes)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None
    ) -> "TrackingConfig":
        """
        Build a config from ``RXSCOPE_<FIELD>`` environment variables.

        Unset variables keep their defaults; malformed values raise ValueError
        so a typo in the environment is noticed at startup.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            values[field.name] = _coerce(field.name, field.default, raw)
        return cls(**values)


def _coerce(name: str, default: Any, raw: str) -> Any:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


DEFAULT_CONFIG = TrackingConfig()
