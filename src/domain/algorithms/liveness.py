from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_ONLINE_THRESHOLD_MS = 15_000
# Callers re-evaluate on this cadence even when no report arrives: silence is
# itself the offline signal.
DEFAULT_POLL_INTERVAL_S = 2.0


def clock_skew_ms(last_report_ms: int, now_ms: int) -> int:
    """How far in the future a report is relative to the local clock (0 if not)."""

    return max(0, int(last_report_ms) - int(now_ms))


def is_online(
    last_report_ms: int | None,
    now_ms: int,
    threshold_ms: int = DEFAULT_ONLINE_THRESHOLD_MS,
) -> bool:
    """Decide liveness from the timestamp of the last received report.

    Always compares against the report's own timestamp, never against arrival
    order. A future-dated report (publisher clock ahead of ours) yields a
    negative age and counts as online; no clock correction is attempted.
    """

    if last_report_ms is None:
        return False

    skew = clock_skew_ms(last_report_ms, now_ms)
    if skew:
        logger.debug("Report timestamp is %d ms ahead of local clock", skew)

    return (now_ms - last_report_ms) <= threshold_ms
