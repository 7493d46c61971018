import pytest
import asyncio
from unittest.mock import patch

from cruise.metrics import CruiseMetrics, MetricsCollector


class TestMetricsCollector:

    def test_counters_gauges_histograms(self):
        collector = MetricsCollector(max_points_per_metric=3)
        collector.increment("hits")
        collector.increment("hits", 2)
        collector.set_gauge("depth", 7)
        for value in range(5):
            collector.record_histogram("latency", value)

        current = collector.get_all_current_metrics()
        assert current["counters"]["hits"] == 3
        assert current["gauges"]["depth"] == 7
        assert current["histogram_counts"]["latency"] == 3
        assert collector.histograms["latency"] == [2, 3, 4]

    def test_missing_metrics_read_as_zero(self):
        collector = MetricsCollector()
        assert collector.get_counter("nope") == 0.0
        assert collector.get_gauge("nope") == 0.0


class TestCruiseMetrics:

    @pytest.fixture
    def metrics(self):
        metrics = CruiseMetrics(report_interval_seconds=0.01)
        metrics.register_agent("a1")
        return metrics

    def test_health_check_stats(self, metrics):
        metrics.record_health_check("a1", True, duration_ms=10, unhealthy_positions=2,
                                    health_score=3.4, positions_count=3, total_value_sol=12.5)
        metrics.record_health_check("a1", False, duration_ms=30)

        agent = metrics.get_agent_metrics("a1")
        assert agent.health_checks.total_checks == 2
        assert agent.health_checks.successful_checks == 1
        assert agent.health_checks.failed_checks == 1
        assert agent.health_checks.average_duration_ms == pytest.approx(20.0)
        assert agent.health_checks.unhealthy_positions_detected == 2
        assert agent.last_health_score == 3.4
        assert agent.positions_count == 3
        assert agent.total_value_sol == 12.5

    def test_optimization_stats(self, metrics):
        metrics.record_optimization("a1", True, duration_ms=5, actions_planned=3, actions_succeeded=2,
                                    capital_moved_sol=4.5, health_improvement=0.6)
        metrics.record_optimization("a1", True, actions_planned=1, actions_succeeded=1,
                                    capital_moved_sol=1.0, health_improvement=0.2)
        metrics.record_optimization("a1", False)

        stats = metrics.get_agent_metrics("a1").optimizations
        assert stats.total_optimizations == 3
        assert stats.successful_optimizations == 2
        assert stats.failed_optimizations == 1
        assert stats.total_actions_planned == 4
        assert stats.total_actions_succeeded == 3
        assert stats.total_actions_failed == 1
        assert stats.total_capital_moved_sol == pytest.approx(5.5)
        assert stats.average_health_improvement == pytest.approx(0.4)

    def test_unknown_agent_only_updates_globals(self, metrics):
        metrics.record_health_check("ghost", True)
        metrics.record_optimization("ghost", True, actions_planned=1, actions_succeeded=1)

        assert metrics.get_agent_metrics("ghost") is None
        summary = metrics.get_metrics_summary()
        assert summary["health_checks"]["total"] == 1
        assert summary["optimizations"]["actions_planned"] == 1

    def test_register_is_idempotent_and_unregister_drops(self, metrics):
        metrics.record_health_check("a1", True)
        metrics.register_agent("a1")
        assert metrics.get_agent_metrics("a1").health_checks.total_checks == 1

        metrics.unregister_agent("a1")
        metrics.unregister_agent("a1")
        assert metrics.get_agent_metrics("a1") is None
        assert metrics.metrics.get_gauge("cruise.registered_agents") == 0

    def test_summary(self, metrics):
        metrics.update_task_metrics(7, 5)
        metrics.record_emergency("a1")

        summary = metrics.get_metrics_summary()
        assert summary["registered_agents"] == 1
        assert summary["tasks"] == {"total": 7, "enabled": 5}
        assert summary["emergencies"] == 1
        assert summary["agents"][0]["agent_id"] == "a1"
        assert summary["agents"][0]["health_checks"]["emergencies"] == 1
        assert summary["memory_usage_mb"] > 0

    @pytest.mark.asyncio
    async def test_reporting_loop(self, metrics):
        with patch.object(metrics, "report_metrics") as report:
            await metrics.start_reporting()
            await metrics.start_reporting()
            for _ in range(50):
                if report.call_count:
                    break
                await asyncio.sleep(0.01)
            await metrics.stop_reporting()
            await metrics.stop_reporting()

        assert report.call_count >= 1

    def test_report_metrics_logs_summary(self, metrics):
        metrics.record_health_check("a1", True, health_score=4.0)
        # Runs without error against the default structlog configuration
        metrics.report_metrics()
