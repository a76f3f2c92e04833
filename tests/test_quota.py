import asyncio
from datetime import date, datetime, timedelta, timezone

from ecos_backend.components.quota import QuotaStatus, QuotaTracker


def test_day_for_uses_service_offset():
    tracker = QuotaTracker(database=None, daily_limit=20, utc_offset_hours=2)
    assert tracker.day_for(datetime(2024, 3, 10, 21, 59)) == date(2024, 3, 10)
    assert tracker.day_for(datetime(2024, 3, 10, 22, 0)) == date(2024, 3, 11)

    paris = timezone(timedelta(hours=2))
    assert tracker.day_for(datetime(2024, 3, 11, 0, 30, tzinfo=paris)) == date(2024, 3, 11)
    assert tracker.day_for(datetime(2024, 3, 10, 23, 30, tzinfo=timezone.utc)) == date(2024, 3, 11)


def test_quota_status_dict():
    assert QuotaStatus(used=5, limit=20).to_dict() == {"used": 5, "remaining": 15, "limitReached": False}
    assert QuotaStatus(used=20, limit=20).to_dict() == {"used": 20, "remaining": 0, "limitReached": True}


def test_increment_n_times(make_database):
    now = datetime(2024, 3, 10, 9, 0)

    async def scenario_run():
        database = await make_database()
        tracker = QuotaTracker(database, daily_limit=20)
        before = await tracker.get_status("etu-1", now)
        for _ in range(5):
            await tracker.increment("etu-1", now)
        after = await tracker.get_status("etu-1", now)
        other = await tracker.get_status("etu-2", now)
        await database.close()
        return before, after, other

    before, after, other = asyncio.run(scenario_run())
    assert before.used == 0 and before.remaining == 20
    assert after.used == 5 and after.remaining == 15
    assert other.used == 0


def test_reserve_refuses_at_limit_without_incrementing(make_database):
    now = datetime(2024, 3, 10, 9, 0)

    async def scenario_run():
        database = await make_database()
        tracker = QuotaTracker(database, daily_limit=3)
        granted = [await tracker.check_and_reserve("etu-1", now) for _ in range(3)]
        refused = await tracker.check_and_reserve("etu-1", now)
        refused_again = await tracker.check_and_reserve("etu-1", now)
        status = await tracker.get_status("etu-1", now)
        await database.close()
        return granted, refused, refused_again, status

    granted, refused, refused_again, status = asyncio.run(scenario_run())
    assert [s.used for s in granted] == [1, 2, 3]
    assert all(s.granted for s in granted)
    assert granted[-1].limit_reached
    assert not refused.granted and refused.limit_reached
    assert not refused_again.granted
    assert status.used == 3


def test_counter_rolls_over_at_local_midnight(make_database):
    async def scenario_run():
        database = await make_database()
        tracker = QuotaTracker(database, daily_limit=1, utc_offset_hours=2)
        first = await tracker.check_and_reserve("etu-1", datetime(2024, 3, 10, 21, 0))
        same_day = await tracker.check_and_reserve("etu-1", datetime(2024, 3, 10, 21, 59))
        next_day = await tracker.check_and_reserve("etu-1", datetime(2024, 3, 10, 22, 1))
        await database.close()
        return first, same_day, next_day

    first, same_day, next_day = asyncio.run(scenario_run())
    assert first.granted
    assert not same_day.granted
    assert next_day.granted and next_day.used == 1
