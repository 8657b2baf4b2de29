from __future__ import annotations

import asyncio

from dockwatch.controller import build_self_matcher
from dockwatch.dispatcher import CommandDispatcher
from dockwatch.errors import RuntimeApiError
from dockwatch.heartbeat import CancelToken, PollScheduler
from dockwatch.log_store import LogStore
from dockwatch.models import CommandKind, ContainerState
from dockwatch.registry import ContainerRegistry
from dockwatch.state import DashboardState
from tests.fakes import FakeRuntimeClient, log_line, make_summary, settle


def _scheduler(client, logger, **kwargs):
    registry = ContainerRegistry()
    log_store = LogStore()
    state = DashboardState()
    kwargs.setdefault("interval_sec", 60)
    scheduler = PollScheduler(client, registry, log_store, state, logger, **kwargs)
    return scheduler, registry, log_store, state


class TestCancelToken:
    def test_sleep_returns_early_when_cancelled(self):
        async def scenario():
            token = CancelToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            return await token.sleep(5), token.cancelled

        assert asyncio.run(scenario()) == (True, True)

    def test_sleep_times_out(self):
        async def scenario():
            return await CancelToken().sleep(0.01)

        assert asyncio.run(scenario()) is False


class TestTick:
    def test_tick_populates_registry_stats_and_logs(self, logger):
        client = FakeRuntimeClient([make_summary("a"), make_summary("b", ContainerState.exited)])
        client.log_lines = {"a": [log_line(1, "hello")], "b": [log_line(1, "bye")]}
        scheduler, registry, log_store, state = _scheduler(client, logger)

        async def scenario():
            assert scheduler.tick() is True
            await settle()
            has_tail = (scheduler.has_log_tail("a"), scheduler.has_log_tail("b"))
            await scheduler.shutdown()
            return has_tail

        has_tail = asyncio.run(scenario())

        assert set(registry.ids()) == {"a", "b"}
        record = registry.get("a")
        assert record.cpu_percent == 12.5
        assert record.stats_stale is False
        assert record.restart_count == 2
        assert client.count("stats", "b") == 0
        assert has_tail == (True, False)
        assert log_store.line_count("a") == 1
        assert log_store.line_count("b") == 1
        assert state.connected is True
        assert state.ticks == 1

    def test_zero_containers(self, logger):
        client = FakeRuntimeClient([])
        scheduler, registry, _, state = _scheduler(client, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            await scheduler.shutdown()

        asyncio.run(scenario())
        assert registry.ids() == []
        assert state.connected is True

    def test_overlapping_tick_is_skipped(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        client.list_gate = asyncio.Event()
        scheduler, _, _, state = _scheduler(client, logger)

        async def scenario():
            first = scheduler.tick()
            await asyncio.sleep(0)
            second = scheduler.tick()
            client.list_gate.set()
            await settle()
            third = scheduler.tick()
            await settle()
            await scheduler.shutdown()
            return first, second, third

        assert asyncio.run(scenario()) == (True, False, True)
        assert state.skipped_ticks == 1
        assert state.ticks == 2
        assert client.count("list") == 2

    def test_one_stats_fetch_per_container(self, logger):
        client = FakeRuntimeClient([make_summary("slow"), make_summary("fast")])
        scheduler, registry, _, _ = _scheduler(client, logger)

        async def scenario():
            client.stats_gate = asyncio.Event()
            scheduler.tick()
            await settle()
            scheduler.tick()
            await settle()
            pending = scheduler.stats_in_flight("slow")
            counts = client.count("stats", "slow"), client.count("stats", "fast")
            client.stats_gate.set()
            await settle()
            await scheduler.shutdown()
            return pending, counts

        pending, counts = asyncio.run(scenario())
        assert pending is True
        assert counts == (1, 1)
        assert registry.get("slow").stats_stale is False

    def test_stop_through_dispatcher_marks_stats_stale(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        scheduler, registry, _, _ = _scheduler(client, logger)
        dispatcher = CommandDispatcher(client, registry, scheduler, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            fresh = registry.get("a").stats_stale
            dispatcher.submit("a", CommandKind.stop)
            await dispatcher.wait_idle()
            client.containers = [make_summary("a", ContainerState.exited)]
            scheduler.tick()
            await settle()
            await scheduler.shutdown()
            return fresh

        assert asyncio.run(scenario()) is False
        record = registry.get("a")
        assert record.state == ContainerState.exited
        assert record.stats_stale is True
        assert record.cpu_percent == 12.5
        assert client.count("stats", "a") == 1

    def test_late_stats_after_stop_stay_stale(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        scheduler, registry, _, _ = _scheduler(client, logger)
        dispatcher = CommandDispatcher(client, registry, scheduler, logger)

        async def scenario():
            client.stats_gate = asyncio.Event()
            scheduler.tick()
            await settle()
            dispatcher.submit("a", CommandKind.stop)
            await dispatcher.wait_idle()
            client.stats_gate.set()
            await settle()
            await scheduler.shutdown()

        asyncio.run(scenario())
        record = registry.get("a")
        assert record.state == ContainerState.exited
        assert record.stats_stale is True
        assert record.cpu_percent is None

    def test_stats_failure_is_isolated(self, logger):
        client = FakeRuntimeClient([make_summary("a"), make_summary("b")])
        client.stats_errors = {"a"}
        scheduler, registry, _, _ = _scheduler(client, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            await scheduler.shutdown()

        asyncio.run(scenario())
        assert registry.get("a").stats_stale is True
        assert registry.get("a").cpu_percent is None
        assert registry.get("b").cpu_percent == 12.5

    def test_inventory_failure_keeps_records(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        scheduler, registry, _, state = _scheduler(client, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            client.list_error = RuntimeApiError("runtime_request_failed: boom")
            scheduler.tick()
            await settle()
            await scheduler.shutdown()

        asyncio.run(scenario())
        assert registry.ids() == ["a"]
        assert state.connected is False
        assert "boom" in state.last_error


class TestLogTails:
    def test_leaving_running_cancels_tail_and_marks_stale(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        client.log_lines = {"a": [log_line(1, "up")]}
        scheduler, registry, log_store, _ = _scheduler(client, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            before = scheduler.has_log_tail("a")
            client.containers = [make_summary("a", ContainerState.exited)]
            client.log_lines["a"].append(log_line(2, "shutting down"))
            scheduler.tick()
            await settle()
            after = scheduler.has_log_tail("a")
            await scheduler.shutdown()
            return before, after

        before, after = asyncio.run(scenario())
        assert (before, after) == (True, False)
        assert registry.get("a").stats_stale is True
        assert log_store.line_count("a") == 2

    def test_removed_container_drops_tail(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        scheduler, registry, _, _ = _scheduler(client, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            client.containers = []
            scheduler.tick()
            await settle()
            tail = scheduler.has_log_tail("a")
            await scheduler.shutdown()
            return tail

        assert asyncio.run(scenario()) is False
        assert registry.ids() == []

    def test_refetch_uses_latest_timestamp(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        client.log_lines = {"a": [log_line(7, "x")]}
        scheduler, _, log_store, _ = _scheduler(client, logger, interval_sec=0.01)

        async def scenario():
            scheduler.tick()
            await settle(10)
            await scheduler.shutdown()

        asyncio.run(scenario())
        since_values = [call[2] for call in client.calls if call[0] == "logs"]
        assert since_values[0] == 0
        assert since_values[-1] == 1704067207
        assert log_store.line_count("a") == 1

    def test_suspended_container_is_left_alone(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        scheduler, _, _, _ = _scheduler(client, logger)

        async def scenario():
            scheduler.tick()
            await settle()
            scheduler.suspend("a")
            await settle()
            suspended = scheduler.has_log_tail("a")
            stats_before = client.count("stats", "a")
            scheduler.tick()
            await settle()
            stats_during = client.count("stats", "a")
            scheduler.resume("a")
            scheduler.tick()
            await settle()
            resumed = scheduler.has_log_tail("a")
            await scheduler.shutdown()
            return suspended, stats_before, stats_during, resumed

        suspended, stats_before, stats_during, resumed = asyncio.run(scenario())
        assert suspended is False
        assert stats_during == stats_before
        assert resumed is True


class TestSelfHiding:
    def test_own_container_is_hidden(self, logger):
        client = FakeRuntimeClient(
            [make_summary("abc123def456"), make_summary("other", command="/app/dockwatch")]
        )
        scheduler, registry, _, _ = _scheduler(client, logger, is_self=build_self_matcher("abc123def456"))

        async def scenario():
            scheduler.tick()
            await settle()
            await scheduler.shutdown()

        asyncio.run(scenario())
        assert registry.ids() == []

    def test_show_self_keeps_and_marks(self, logger):
        client = FakeRuntimeClient([make_summary("abc123def456"), make_summary("b")])
        scheduler, registry, _, _ = _scheduler(
            client,
            logger,
            is_self=build_self_matcher("abc123def456"),
            show_self=True,
        )

        async def scenario():
            scheduler.tick()
            await settle()
            tail = scheduler.has_log_tail("abc123def456")
            await scheduler.shutdown()
            return tail

        tail = asyncio.run(scenario())
        assert registry.get("abc123def456").is_self is True
        assert registry.get("b").is_self is False
        assert tail is False


class TestRun:
    def test_run_stops_promptly(self, logger):
        client = FakeRuntimeClient([make_summary("a")])
        scheduler, registry, _, state = _scheduler(client, logger, interval_sec=0.01)

        async def scenario():
            task = asyncio.create_task(scheduler.run())
            await settle(5)
            scheduler.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(scenario())
        assert state.ticks >= 2
        assert registry.ids() == ["a"]
