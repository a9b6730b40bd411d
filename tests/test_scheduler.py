"""Tests for the daily update timer."""
import asyncio
from datetime import datetime

import pytest

from dockhand.core.scheduler import UpdateTimer, parse_time


class TestParseTime:

    @pytest.mark.parametrize("value,expected", [
        ("02:00", (2, 0)),
        ("23:59", (23, 59)),
        ("2:30pm", (14, 30)),
        ("12:00am", (0, 0)),
        ("12:15PM", (12, 15)),
        (" 7:05 am ", (7, 5)),
    ])
    def test_valid(self, value, expected):
        assert parse_time(value) == expected

    @pytest.mark.parametrize("value", ["", "2", "24:00", "10:60", "13:00pm", "0:30am", "noon"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_time(value)


class TestNextRun:

    def test_later_today(self):
        timer = UpdateTimer("02:00", lambda: None)

        assert timer.next_run(datetime(2024, 3, 1, 1, 15)) == datetime(2024, 3, 1, 2, 0)

    def test_passed_rolls_over_to_tomorrow(self):
        timer = UpdateTimer("02:00", lambda: None)

        assert timer.next_run(datetime(2024, 3, 1, 2, 0)) == datetime(2024, 3, 2, 2, 0)
        assert timer.next_run(datetime(2024, 2, 29, 23, 0)) == datetime(2024, 3, 1, 2, 0)

    def test_invalid_time_rejected(self):
        with pytest.raises(ValueError):
            UpdateTimer("25:00", lambda: None)


class TestFiring:

    @pytest.mark.asyncio
    async def test_start_and_cancel(self):
        timer = UpdateTimer("02:00", lambda: None, clock=lambda: datetime(2024, 3, 1, 1, 0))

        assert timer.start() == datetime(2024, 3, 1, 2, 0)
        assert timer.active

        timer.cancel()
        assert not timer.active

    @pytest.mark.asyncio
    async def test_fire_runs_callback_and_rearms(self):
        calls = []
        timer = UpdateTimer("02:00", lambda: calls.append("sweep"), clock=lambda: datetime(2024, 3, 1, 2, 0))

        timer._fire()

        assert calls == ["sweep"]
        assert timer.active
        timer.cancel()

    @pytest.mark.asyncio
    async def test_coroutine_callback_scheduled(self):
        done = asyncio.Event()

        async def sweep():
            done.set()

        timer = UpdateTimer("02:00", sweep)
        timer._fire()

        await asyncio.wait_for(done.wait(), timeout=1)
        timer.cancel()
