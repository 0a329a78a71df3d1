"""
Tests for the bot link state machine (botgate.switchbot.bot).
"""

import asyncio

import pytest

from botgate.switchbot.bot import (
    ACTION_GET_INFO,
    ACTION_PRESS,
    Bot,
    BotOpenError,
    BotOpenOptions,
    ResponseSlot,
)
from botgate.switchbot.status import BotStatus
from fakes import GATE_MAC, FakeAdapter, FakeChar, wait_until

GRACE = 0.05


def _make_bot(adapter: FakeAdapter, **kwargs) -> Bot:
    kwargs.setdefault("grace_period", GRACE)
    kwargs.setdefault("press_timeout", 0.5)
    kwargs.setdefault("keepalive_interval", None)
    return Bot("gate", GATE_MAC, adapter, **kwargs)


# ── ResponseSlot ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestResponseSlot:
    async def test_newer_payload_replaces_unread_one(self):
        slot = ResponseSlot()
        slot.put(b"\x03")
        slot.put(b"\x01")
        assert await slot.get() == b"\x01"
        assert slot.empty()

    async def test_clear_drops_pending_payload(self):
        slot = ResponseSlot()
        slot.put(b"\x01")
        slot.clear()
        assert slot.empty()


# ── acquire ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestAcquire:
    async def test_opens_closed_bot(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)

        await bot.acquire()

        assert bot.ready
        assert bot.state == "ready"
        assert bot.ref_count == 1
        assert adapter.connect_attempts == [GATE_MAC]

    async def test_first_characteristic_notifies_second_is_written(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)

        await bot.acquire()
        await bot.press()

        assert adapter.notify_char == FakeChar("char0")
        assert adapter.writes == [(FakeChar("char1"), ACTION_PRESS)]

    async def test_connect_succeeds_on_last_try(self):
        adapter = FakeAdapter(connect_failures=2)
        bot = _make_bot(adapter)

        await bot.acquire()

        assert bot.ready
        assert len(adapter.connect_attempts) == 3

    async def test_connect_gives_up_after_budget(self):
        adapter = FakeAdapter(connect_failures=100)
        bot = _make_bot(adapter)

        with pytest.raises(BotOpenError) as excinfo:
            await bot.acquire()

        assert excinfo.value.step == "connecting"
        assert len(adapter.connect_attempts) == 3
        assert bot.state == "closed"
        assert bot.ref_count == 0

    async def test_custom_connect_budget(self):
        adapter = FakeAdapter(connect_failures=4)
        bot = _make_bot(adapter, open_options=BotOpenOptions(connect_tries=5))

        await bot.acquire()

        assert bot.ready
        assert len(adapter.connect_attempts) == 5

    async def test_options_passed_to_acquire_override_defaults(self):
        adapter = FakeAdapter(connect_failures=100)
        bot = _make_bot(adapter)

        with pytest.raises(BotOpenError):
            await bot.acquire(BotOpenOptions(connect_tries=1))

        assert len(adapter.connect_attempts) == 1

    async def test_service_discovery_retried(self):
        adapter = FakeAdapter(service_failures=2)
        bot = _make_bot(adapter)

        await bot.acquire()

        assert bot.ready

    async def test_service_discovery_failure_disconnects(self):
        adapter = FakeAdapter(service_failures=100)
        bot = _make_bot(adapter)

        with pytest.raises(BotOpenError) as excinfo:
            await bot.acquire()

        assert excinfo.value.step == "discovering services"
        assert adapter.disconnects == 1
        assert bot.state == "closed"

    async def test_wrong_characteristic_count_fails(self):
        adapter = FakeAdapter(char_counts=[1, 3, 1])
        bot = _make_bot(adapter)

        with pytest.raises(BotOpenError) as excinfo:
            await bot.acquire()

        assert excinfo.value.step == "discovering characteristics"
        assert adapter.disconnects == 1
        assert bot.state == "closed"
        assert bot.ref_count == 0

    async def test_wrong_characteristic_count_then_two(self):
        adapter = FakeAdapter(char_counts=[3, 2])
        bot = _make_bot(adapter)

        await bot.acquire()

        assert bot.ready

    async def test_failed_acquire_does_not_fake_later_success(self):
        adapter = FakeAdapter(connect_failures=3)
        bot = _make_bot(adapter)

        with pytest.raises(BotOpenError):
            await bot.acquire()
        await bot.acquire()

        assert bot.ready
        assert bot.ref_count == 1
        assert len(adapter.connect_attempts) == 4

    async def test_concurrent_acquires_connect_once(self):
        adapter = FakeAdapter(delay=0.01)
        bot = _make_bot(adapter)

        await asyncio.gather(bot.acquire(), bot.acquire())

        assert len(adapter.connect_attempts) == 1
        assert bot.ref_count == 2
        assert bot.ready

    async def test_reconnects_when_peripheral_dropped_link(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)
        await bot.acquire()
        await bot.release()

        adapter.clients[0].connected = False
        await bot.acquire()

        assert bot.ready
        assert len(adapter.connect_attempts) == 2


# ── release / grace period ───────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRelease:
    async def test_balanced_acquire_release_closes_after_grace(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)

        for _ in range(3):
            await bot.acquire()
        for _ in range(3):
            await bot.release()

        assert bot.ref_count == 0
        assert bot.state == "grace"

        await wait_until(lambda: bot.state == "closed")
        assert adapter.disconnects == 1
        assert adapter.unsubscribes == 1

    async def test_release_with_other_holders_keeps_link(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)
        await bot.acquire()
        await bot.acquire()

        await bot.release()
        await asyncio.sleep(GRACE * 2)

        assert bot.ref_count == 1
        assert bot.state == "ready"
        assert adapter.disconnects == 0

    async def test_reacquire_within_grace_cancels_close(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)
        await bot.acquire()
        await bot.release()
        assert bot.closing_pending

        await bot.acquire()
        assert not bot.closing_pending
        await asyncio.sleep(GRACE * 2)

        assert bot.state == "ready"
        assert bot.ref_count == 1
        assert len(adapter.connect_attempts) == 1
        assert adapter.disconnects == 0

    async def test_unmatched_release_is_ignored(self):
        bot = _make_bot(FakeAdapter())

        await bot.release()

        assert bot.ref_count == 0
        assert not bot.closing_pending

    async def test_aclose_tears_down_immediately(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)
        await bot.acquire()

        await bot.aclose()

        assert bot.state == "closed"
        assert adapter.disconnects == 1


# ── press ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestPress:
    async def test_press_returns_ok(self):
        bot = _make_bot(FakeAdapter())
        await bot.acquire()

        assert await bot.press() is BotStatus.OK

    @pytest.mark.parametrize(
        "answer, expected",
        [
            (b"\x03", BotStatus.BUSY),
            (b"\x06\x00", BotStatus.LOW_BATTERY),
            (b"\x7f", BotStatus.ERROR),
            (b"", BotStatus.ERROR),
        ],
    )
    async def test_press_maps_answer(self, answer, expected):
        bot = _make_bot(FakeAdapter(answer=answer))
        await bot.acquire()

        assert await bot.press() is expected

    async def test_press_on_closed_bot_does_not_write(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)

        assert await bot.press() is BotStatus.WRITE_ERROR
        assert adapter.writes == []

    async def test_write_failure(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)
        await bot.acquire()
        adapter.write_error = True

        assert await bot.press() is BotStatus.WRITE_ERROR

    async def test_no_answer_times_out(self):
        bot = _make_bot(FakeAdapter(answer=None), press_timeout=0.05)
        await bot.acquire()

        assert await bot.press() is BotStatus.TIMEOUT

    async def test_stale_notification_is_not_taken_as_answer(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter)
        await bot.acquire()

        adapter.notify(b"\x03")
        assert await bot.press() is BotStatus.OK

    async def test_operations_never_overlap_on_transport(self):
        adapter = FakeAdapter(delay=0.005)
        bot = _make_bot(adapter, grace_period=0.01)

        async def user():
            await bot.acquire()
            await bot.press()
            await bot.release()

        await asyncio.gather(*(user() for _ in range(5)))
        await asyncio.sleep(0.05)
        await asyncio.gather(*(user() for _ in range(5)))

        assert adapter.max_active == 1
        assert len(adapter.writes) == 10


# ── keep-alive ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestKeepAlive:
    async def test_held_bot_gets_info(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter, keepalive_interval=0.01)
        await bot.acquire()

        await wait_until(lambda: len(adapter.writes) >= 2)

        assert all(data == ACTION_GET_INFO for _, data in adapter.writes)
        await bot.aclose()

    async def test_get_info_stops_when_released(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter, keepalive_interval=0.01, grace_period=10)
        await bot.acquire()
        await bot.release()

        writes = len(adapter.writes)
        await asyncio.sleep(0.05)

        assert len(adapter.writes) == writes
        await bot.aclose()

    async def test_press_restarts_interval(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter, keepalive_interval=0.1)
        await bot.acquire()

        for _ in range(12):
            assert await bot.press() is BotStatus.OK
            await asyncio.sleep(0.02)

        assert all(data == ACTION_PRESS for _, data in adapter.writes)
        await bot.aclose()

    async def test_get_info_resumes_after_last_press(self):
        adapter = FakeAdapter()
        bot = _make_bot(adapter, keepalive_interval=0.02)
        await bot.acquire()
        await bot.press()

        await wait_until(lambda: adapter.writes[-1][1] == ACTION_GET_INFO)

        await bot.aclose()
