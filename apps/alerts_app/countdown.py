"""
Countdown / expiry engine for the cancellation window.

Remaining time is always recomputed as ``window - (now - created_at)`` from
the persisted creation timestamp. Nothing here trusts a locally started
timer, so a client that reconnects mid-countdown gets the corrected time
instead of a restarted one.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.conf import settings

from .clock import parse_utc

logger = logging.getLogger(__name__)

TICK_INTERVAL_SECONDS = 1

TIER_NORMAL = 'normal'
TIER_WARNING = 'warning'
TIER_CRITICAL = 'critical'
TIER_EXPIRED = 'expired'


def cancel_window():
    return timedelta(seconds=settings.ALERT_CANCEL_WINDOW_SECONDS)


def window_seconds(window=None):
    return int((window or cancel_window()).total_seconds())


def expiry_boundary(created_at, window=None):
    return parse_utc(created_at) + (window or cancel_window())


def remaining_ms(created_at, now, window=None):
    window = window or cancel_window()
    elapsed = parse_utc(now) - parse_utc(created_at)
    return int((window - elapsed) / timedelta(milliseconds=1))


def urgency_tier(seconds_remaining):
    # Display-only; carries no state semantics.
    if seconds_remaining <= 0:
        return TIER_EXPIRED
    if seconds_remaining <= settings.ALERT_COUNTDOWN_CRITICAL_SECONDS:
        return TIER_CRITICAL
    if seconds_remaining <= settings.ALERT_COUNTDOWN_WARNING_SECONDS:
        return TIER_WARNING
    return TIER_NORMAL


@dataclass(frozen=True)
class CountdownSnapshot:
    created_at: datetime
    expires_at: datetime
    remaining_ms: int

    @property
    def is_expired(self):
        return self.remaining_ms <= 0

    @property
    def seconds_remaining(self):
        return max(self.remaining_ms, 0) // 1000

    @property
    def tier(self):
        if self.is_expired:
            return TIER_EXPIRED
        return urgency_tier(self.seconds_remaining)

    def as_dict(self):
        return {
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'remaining_ms': max(self.remaining_ms, 0),
            'seconds_remaining': self.seconds_remaining,
            'tier': self.tier,
            'is_expired': self.is_expired,
        }


def snapshot(created_at, now, window=None):
    window = window or cancel_window()
    created_at = parse_utc(created_at)
    return CountdownSnapshot(
        created_at=created_at,
        expires_at=created_at + window,
        remaining_ms=remaining_ms(created_at, now, window),
    )


async def run_countdown(created_at, clock, on_tick, on_expire, window=None, sleep=asyncio.sleep):
    """
    Drive a 1 Hz countdown until the window closes.

    ``on_tick`` and ``on_expire`` are coroutines taking a CountdownSnapshot.
    Each tick re-reads the clock, so a stalled loop catches up instead of
    drifting. If the window has already lapsed, ``on_expire`` runs at once
    and no tick is emitted. Returns the final snapshot.
    """
    current = snapshot(created_at, clock.now_utc(), window)
    if current.is_expired:
        logger.info(f"Countdown for window starting {current.created_at.isoformat()} already expired")
        await on_expire(current)
        return current

    while True:
        await on_tick(current)
        await sleep(min(TICK_INTERVAL_SECONDS, current.remaining_ms / 1000))
        current = snapshot(created_at, clock.now_utc(), window)
        if current.is_expired:
            logger.info(f"Countdown for window starting {current.created_at.isoformat()} reached zero")
            await on_expire(current)
            return current
