from datetime import datetime, timedelta, timezone as dt_timezone

from asgiref.sync import async_to_sync
from django.test import SimpleTestCase, override_settings

from apps.alerts_app import countdown
from apps.alerts_app.clock import parse_utc, truncate_to_millis
from apps.alerts_app.tests.fakes import T0, FrozenClock


class ClockTests(SimpleTestCase):

    def test_naive_timestamp_is_utc(self):
        parsed = parse_utc('2025-01-01 12:00:00')
        self.assertEqual(parsed, T0)

    def test_offset_timestamp_is_converted(self):
        parsed = parse_utc('2025-01-01T14:00:00+02:00')
        self.assertEqual(parsed, T0)
        self.assertEqual(parsed.utcoffset(), timedelta(0))

    def test_unparseable_timestamp(self):
        self.assertIsNone(parse_utc('not a date'))
        self.assertIsNone(parse_utc(''))

    def test_truncate_to_millis(self):
        value = datetime(2025, 1, 1, 12, 0, 0, 123456, tzinfo=dt_timezone.utc)
        self.assertEqual(truncate_to_millis(value).microsecond, 123000)


class SnapshotTests(SimpleTestCase):

    def test_remaining_is_recomputed_from_created_at(self):
        state = countdown.snapshot(T0, T0 + timedelta(seconds=50))
        self.assertEqual(state.remaining_ms, 10000)
        self.assertEqual(state.seconds_remaining, 10)
        self.assertEqual(state.expires_at, T0 + timedelta(seconds=60))
        self.assertFalse(state.is_expired)

    def test_naive_stored_timestamp_is_not_shifted(self):
        state = countdown.snapshot('2025-01-01 12:00:00', T0 + timedelta(seconds=1))
        self.assertEqual(state.remaining_ms, 59000)

    def test_expired_at_boundary(self):
        state = countdown.snapshot(T0, T0 + timedelta(seconds=60))
        self.assertTrue(state.is_expired)
        self.assertEqual(state.tier, countdown.TIER_EXPIRED)
        self.assertEqual(state.as_dict()['remaining_ms'], 0)

    def test_urgency_tiers(self):
        self.assertEqual(countdown.urgency_tier(45), countdown.TIER_NORMAL)
        self.assertEqual(countdown.urgency_tier(20), countdown.TIER_WARNING)
        self.assertEqual(countdown.urgency_tier(10), countdown.TIER_CRITICAL)
        self.assertEqual(countdown.urgency_tier(0), countdown.TIER_EXPIRED)

    @override_settings(ALERT_CANCEL_WINDOW_SECONDS=30)
    def test_window_follows_settings(self):
        self.assertEqual(countdown.window_seconds(), 30)
        self.assertEqual(countdown.snapshot(T0, T0).remaining_ms, 30000)


class RunCountdownTests(SimpleTestCase):

    def run_countdown(self, clock, created_at=T0):
        ticks = []
        expired = []

        async def on_tick(state):
            ticks.append(state.seconds_remaining)

        async def on_expire(state):
            expired.append(state)

        async def fake_sleep(seconds):
            clock.advance(seconds=seconds)

        async def drive():
            return await countdown.run_countdown(created_at, clock, on_tick, on_expire, sleep=fake_sleep)

        final = async_to_sync(drive)()
        return ticks, expired, final

    def test_ticks_once_per_second_until_expiry(self):
        clock = FrozenClock(T0 + timedelta(seconds=55))
        ticks, expired, final = self.run_countdown(clock)

        self.assertEqual(ticks, [5, 4, 3, 2, 1])
        self.assertEqual(len(expired), 1)
        self.assertTrue(final.is_expired)

    def test_already_lapsed_expires_without_ticking(self):
        clock = FrozenClock(T0 + timedelta(minutes=2))
        ticks, expired, final = self.run_countdown(clock)

        self.assertEqual(ticks, [])
        self.assertEqual(len(expired), 1)

    def test_partial_second_is_not_overslept(self):
        clock = FrozenClock(T0 + timedelta(seconds=58, milliseconds=500))
        ticks, expired, _ = self.run_countdown(clock)

        self.assertEqual(ticks, [1, 0])
        self.assertEqual(clock.now, T0 + timedelta(seconds=60))
        self.assertEqual(len(expired), 1)
