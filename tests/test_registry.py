from __future__ import annotations

from dockwatch.models import (
    HISTORY_SIZE,
    CommandKind,
    CommandOutcome,
    ContainerDetail,
    ContainerState,
    ContainerStats,
    FilterBy,
    HealthStatus,
    NoticeLevel,
    SortColumn,
    SortOrder,
)
from dockwatch.registry import ContainerRegistry
from tests.fakes import make_summary


class TestUpsert:
    """Membership follows the latest inventory exactly."""

    def test_id_set_matches_inventory(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a"), make_summary("b"), make_summary("c")])
        registry.upsert([make_summary("b"), make_summary("d")])
        assert set(registry.ids()) == {"b", "d"}

    def test_absent_container_is_removed(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a"), make_summary("b", ContainerState.exited)])

        result = registry.upsert([make_summary("a"), make_summary("c", ContainerState.created)])

        assert set(registry.ids()) == {"a", "c"}
        assert result.removed == ["b"]
        assert result.added == ["c"]
        assert registry.get("c").state == ContainerState.created

    def test_empty_inventory_is_valid(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        result = registry.upsert([])
        assert registry.ids() == []
        assert result.removed == ["a"]
        assert registry.get_snapshot().containers == ()

    def test_merge_keeps_stats(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        registry.update_stats("a", ContainerStats(cpu_percent=3.0, memory_usage=10, memory_limit=100))

        registry.upsert([make_summary("a", name="renamed", status="Up 2 minutes")])

        record = registry.get("a")
        assert record.name == "renamed"
        assert record.cpu_percent == 3.0
        assert record.memory_usage == 10

    def test_leaving_running_is_reported(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        result = registry.upsert([make_summary("a", ContainerState.exited)])
        assert result.left_polling == ["a"]

    def test_health_from_status_text(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a", status="Up 5 minutes (unhealthy)")])
        record = registry.get("a")
        assert record.health == HealthStatus.unhealthy
        assert record.display_state == "unhealthy"

    def test_detail_merges_without_touching_stats(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        registry.update_stats("a", ContainerStats(cpu_percent=1.0))
        registry.apply_detail(
            "a",
            ContainerDetail(id="a", health=HealthStatus.healthy, restart_count=3, command="/bin/app --serve"),
        )
        record = registry.get("a")
        assert record.restart_count == 3
        assert record.health == HealthStatus.healthy
        assert record.command == "/bin/app --serve"
        assert record.cpu_percent == 1.0

    def test_change_callback_runs(self):
        calls = []
        registry = ContainerRegistry(on_change=lambda: calls.append(1))
        registry.upsert([make_summary("a")])
        assert calls


class TestStats:
    def test_missing_values_do_not_overwrite(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        registry.update_stats("a", ContainerStats(cpu_percent=40.0, memory_usage=500, memory_limit=1000))
        registry.update_stats("a", ContainerStats(memory_limit=1000, rx_bytes=5))

        record = registry.get("a")
        assert record.cpu_percent == 40.0
        assert record.memory_usage == 500
        assert record.rx_bytes == 5
        assert record.stats_stale is False

    def test_unknown_id_is_ignored(self):
        registry = ContainerRegistry()
        assert registry.update_stats("ghost", ContainerStats(cpu_percent=1.0)) is False
        assert registry.ids() == []

    def test_history_is_bounded(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        for value in range(HISTORY_SIZE + 10):
            registry.update_stats("a", ContainerStats(cpu_percent=float(value), memory_usage=value))

        record = registry.get("a")
        assert len(record.cpu_history) == HISTORY_SIZE
        assert record.cpu_history[-1] == float(HISTORY_SIZE + 9)
        assert record.memory_history[0] == 10

    def test_stats_for_stopped_container_are_ignored(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a", ContainerState.exited)])
        assert registry.update_stats("a", ContainerStats(cpu_percent=9.0)) is False
        record = registry.get("a")
        assert record.cpu_percent is None
        assert record.stats_stale is True

    def test_stale_marker(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        assert registry.get("a").stats_stale is True
        registry.update_stats("a", ContainerStats(cpu_percent=1.0))
        registry.mark_stats_stale("a")
        record = registry.get("a")
        assert record.stats_stale is True
        assert record.cpu_percent == 1.0


class TestOrdering:
    def test_default_order_is_creation_time(self):
        registry = ContainerRegistry()
        registry.upsert(
            [
                make_summary("c", created=30),
                make_summary("a", created=10),
                make_summary("b", created=20),
            ]
        )
        assert registry.get_snapshot().ids == ["a", "b", "c"]

    def test_sort_cycles_asc_desc_none(self):
        registry = ContainerRegistry()
        first = registry.set_sort(SortColumn.name)
        second = registry.set_sort(SortColumn.name)
        third = registry.set_sort(SortColumn.name)

        assert first.order == SortOrder.asc
        assert second.order == SortOrder.desc
        assert third is None

    def test_new_column_starts_ascending(self):
        registry = ContainerRegistry()
        registry.set_sort(SortColumn.name)
        registry.set_sort(SortColumn.name)
        spec = registry.set_sort(SortColumn.image)
        assert spec.column == SortColumn.image
        assert spec.order == SortOrder.asc

    def test_sort_is_stable(self):
        registry = ContainerRegistry()
        registry.upsert(
            [
                make_summary("a", image="redis", created=1),
                make_summary("b", image="nginx", created=2),
                make_summary("c", image="redis", created=3),
                make_summary("d", image="nginx", created=4),
            ]
        )
        registry.set_sort(SortColumn.image)
        assert registry.get_snapshot().ids == ["b", "d", "a", "c"]

        registry.set_sort(SortColumn.image)
        assert registry.get_snapshot().ids == ["a", "c", "b", "d"]

    def test_sort_by_state_puts_unhealthy_after_running(self):
        registry = ContainerRegistry()
        registry.upsert(
            [
                make_summary("a", ContainerState.exited, created=1),
                make_summary("b", status="Up 1 minute (unhealthy)", created=2),
                make_summary("c", created=3),
                make_summary("d", ContainerState.paused, created=4),
            ]
        )
        registry.set_sort(SortColumn.state)
        assert registry.get_snapshot().ids == ["c", "b", "d", "a"]

    def test_sort_by_cpu_places_missing_first(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a", created=1), make_summary("b", created=2), make_summary("c", created=3)])
        registry.update_stats("a", ContainerStats(cpu_percent=50.0))
        registry.update_stats("c", ContainerStats(cpu_percent=5.0))
        registry.set_sort(SortColumn.cpu)
        assert registry.get_snapshot().ids == ["b", "c", "a"]

    def test_reset_sort(self):
        registry = ContainerRegistry()
        registry.set_sort(SortColumn.tx)
        registry.reset_sort()
        assert registry.get_snapshot().sort is None


class TestFilter:
    def _registry(self) -> ContainerRegistry:
        registry = ContainerRegistry()
        registry.upsert(
            [
                make_summary("a", name="web_frontend", image="nginx", created=1),
                make_summary("b", name="cache", image="redis", created=2),
                make_summary("c", name="worker", image="python", status="Exited (1)", created=3),
            ]
        )
        return registry

    def test_filter_by_name_is_case_insensitive(self):
        registry = self._registry()
        registry.set_filter("WEB")
        snapshot = registry.get_snapshot()
        assert snapshot.ids == ["a"]
        assert snapshot.total == 3
        assert snapshot.filter_term == "WEB"

    def test_filter_by_image(self):
        registry = self._registry()
        registry.set_filter("redis", FilterBy.image)
        assert registry.get_snapshot().ids == ["b"]

    def test_filter_by_all(self):
        registry = self._registry()
        registry.set_filter("exited", FilterBy.all)
        assert registry.get_snapshot().ids == ["c"]

    def test_clearing_filter(self):
        registry = self._registry()
        registry.set_filter("web")
        registry.set_filter("")
        assert registry.get_snapshot().ids == ["a", "b", "c"]

    def test_cycle_filter_by_stops_at_ends(self):
        registry = ContainerRegistry()
        assert registry.cycle_filter_by(forward=False) == FilterBy.name
        assert registry.cycle_filter_by() == FilterBy.image
        assert registry.cycle_filter_by() == FilterBy.status
        assert registry.cycle_filter_by() == FilterBy.all
        assert registry.cycle_filter_by() == FilterBy.all


class TestCommandResults:
    def test_success_updates_state_optimistically(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        registry.apply_command_result("a", CommandKind.stop, CommandOutcome.success(), token="t1")

        assert registry.get("a").state == ContainerState.exited
        notice = registry.get_snapshot().notices[-1]
        assert notice.level == NoticeLevel.info
        assert notice.token == "t1"

    def test_leaving_stats_states_marks_stats_stale(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a"), make_summary("b")])
        registry.update_stats("a", ContainerStats(cpu_percent=3.0))
        registry.update_stats("b", ContainerStats(cpu_percent=4.0))

        registry.apply_command_result("a", CommandKind.pause, CommandOutcome.success())
        registry.apply_command_result("b", CommandKind.restart, CommandOutcome.success())

        assert registry.get("a").stats_stale is True
        assert registry.get("a").cpu_percent == 3.0
        assert registry.get("b").stats_stale is False

    def test_delete_marks_removing(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        registry.apply_command_result("a", CommandKind.delete, CommandOutcome.success())
        assert registry.get("a").state == ContainerState.removing

    def test_failure_leaves_state_and_surfaces_error(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        registry.apply_command_result("a", CommandKind.stop, CommandOutcome.failure("boom"))

        record = registry.get("a")
        assert record.state == ContainerState.running
        assert record.last_error == "boom"
        notice = registry.get_snapshot().notices[-1]
        assert notice.level == NoticeLevel.error
        assert "boom" in notice.message

    def test_result_for_removed_container_only_adds_notice(self):
        registry = ContainerRegistry()
        registry.apply_command_result("gone", CommandKind.start, CommandOutcome.success())
        assert registry.ids() == []
        assert len(registry.get_snapshot().notices) == 1

    def test_notices_are_bounded(self):
        registry = ContainerRegistry()
        for index in range(60):
            registry.add_notice(f"notice {index}")
        notices = registry.get_snapshot().notices
        assert len(notices) == 50
        assert notices[-1].message == "notice 59"
        registry.clear_notices()
        assert registry.get_snapshot().notices == ()


class TestSnapshot:
    def test_snapshot_is_not_affected_by_later_writes(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a")])
        snapshot = registry.get_snapshot()

        registry.upsert([make_summary("a", ContainerState.exited), make_summary("b")])

        assert snapshot.ids == ["a"]
        assert snapshot.containers[0].state == ContainerState.running

    def test_available_commands_follow_state(self):
        registry = ContainerRegistry()
        registry.upsert([make_summary("a"), make_summary("b", ContainerState.paused)])
        assert CommandKind.exec in registry.get("a").available_commands
        assert registry.get("b").available_commands == (CommandKind.unpause, CommandKind.stop, CommandKind.delete)
