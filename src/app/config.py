from __future__ import annotations

import os
from dataclasses import dataclass

from src.domain.algorithms.liveness import (
    DEFAULT_ONLINE_THRESHOLD_MS,
    DEFAULT_POLL_INTERVAL_S,
)
from src.domain.algorithms.proximity import DEFAULT_ACTIVE_STOP_THRESHOLD_M
from src.domain.models.realtime import DEFAULT_KEY_PREFIX


@dataclass(frozen=True, slots=True)
class TrackingSettings:
    """Tunables shared by the broadcast and subscription sessions.

    Env vars:
      - ONLINE_THRESHOLD_MS (default 15000)
      - ACTIVE_STOP_THRESHOLD_M (default 500)
      - LIVENESS_POLL_INTERVAL_S (default 2.0)
      - FIX_TIMEOUT_MS (default 10000)
      - BROADCAST_KEY_PREFIX (default busLocations)
    """

    online_threshold_ms: int = DEFAULT_ONLINE_THRESHOLD_MS
    active_stop_threshold_m: float = DEFAULT_ACTIVE_STOP_THRESHOLD_M
    liveness_poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    fix_timeout_ms: int = 10_000
    key_prefix: str = DEFAULT_KEY_PREFIX

    @staticmethod
    def from_env() -> "TrackingSettings":
        defaults = TrackingSettings()
        return TrackingSettings(
            online_threshold_ms=int(
                os.getenv("ONLINE_THRESHOLD_MS", defaults.online_threshold_ms)
            ),
            active_stop_threshold_m=float(
                os.getenv("ACTIVE_STOP_THRESHOLD_M", defaults.active_stop_threshold_m)
            ),
            liveness_poll_interval_s=float(
                os.getenv(
                    "LIVENESS_POLL_INTERVAL_S", defaults.liveness_poll_interval_s
                )
            ),
            fix_timeout_ms=int(os.getenv("FIX_TIMEOUT_MS", defaults.fix_timeout_ms)),
            key_prefix=(os.getenv("BROADCAST_KEY_PREFIX") or "").strip()
            or defaults.key_prefix,
        )
