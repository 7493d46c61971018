"""
Cruise metrics: health-check, optimization and task counters
"""
import time
import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field, asdict
from collections import defaultdict
import structlog
import psutil
import threading

from .config import settings

logger = structlog.get_logger()


class MetricsCollector:
    """Collects and stores application metrics"""

    def __init__(self, max_points_per_metric: int = 1000):
        self.max_points_per_metric = max_points_per_metric
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def increment(self, name: str, value: float = 1.0):
        """Increment a counter metric"""
        with self._lock:
            self.counters[name] += value

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric"""
        with self._lock:
            self.gauges[name] = value

    def record_histogram(self, name: str, value: float):
        """Record a histogram value"""
        with self._lock:
            self.histograms[name].append(value)
            if len(self.histograms[name]) > self.max_points_per_metric:
                self.histograms[name] = self.histograms[name][-self.max_points_per_metric:]

    def get_counter(self, name: str) -> float:
        with self._lock:
            return self.counters.get(name, 0.0)

    def get_gauge(self, name: str) -> float:
        with self._lock:
            return self.gauges.get(name, 0.0)

    def get_all_current_metrics(self) -> Dict[str, Any]:
        """Get current values for all metrics"""
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histogram_counts": {name: len(values) for name, values in self.histograms.items()}
            }


@dataclass
class HealthCheckStats:
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    average_duration_ms: float = 0.0
    unhealthy_positions_detected: int = 0
    emergencies: int = 0
    last_check_at: Optional[datetime] = None


@dataclass
class OptimizationStats:
    total_optimizations: int = 0
    successful_optimizations: int = 0
    failed_optimizations: int = 0
    average_duration_ms: float = 0.0
    total_actions_planned: int = 0
    total_actions_succeeded: int = 0
    total_actions_failed: int = 0
    total_capital_moved_sol: float = 0.0
    average_health_improvement: float = 0.0
    last_optimization_at: Optional[datetime] = None


@dataclass
class AgentMetrics:
    agent_id: str
    health_checks: HealthCheckStats = field(default_factory=HealthCheckStats)
    optimizations: OptimizationStats = field(default_factory=OptimizationStats)
    last_health_score: Optional[float] = None
    positions_count: int = 0
    total_value_sol: float = 0.0
    last_updated_at: datetime = field(default_factory=datetime.utcnow)


class CruiseMetrics:
    """Observational counters for the cruise loop. Never drives control flow."""

    def __init__(self, report_interval_seconds: Optional[float] = None):
        self.metrics = MetricsCollector()
        self.report_interval = (
            report_interval_seconds if report_interval_seconds is not None
            else settings.METRICS_REPORT_INTERVAL_SECONDS
        )
        self.agent_metrics: Dict[str, AgentMetrics] = {}
        self.start_time = time.time()
        self._lock = threading.Lock()
        self._process = psutil.Process()
        self._report_task: Optional[asyncio.Task] = None

    def register_agent(self, agent_id: str):
        with self._lock:
            if agent_id in self.agent_metrics:
                return
            self.agent_metrics[agent_id] = AgentMetrics(agent_id=agent_id)
            registered = len(self.agent_metrics)

        self.metrics.set_gauge("cruise.registered_agents", registered)
        logger.debug("Agent registered for metrics tracking", agent_id=agent_id)

    def unregister_agent(self, agent_id: str):
        with self._lock:
            if self.agent_metrics.pop(agent_id, None) is None:
                return
            registered = len(self.agent_metrics)

        self.metrics.set_gauge("cruise.registered_agents", registered)
        logger.debug("Agent unregistered from metrics tracking", agent_id=agent_id)

    def record_health_check(
        self,
        agent_id: str,
        success: bool,
        duration_ms: float = 0.0,
        unhealthy_positions: int = 0,
        health_score: Optional[float] = None,
        positions_count: Optional[int] = None,
        total_value_sol: Optional[float] = None
    ):
        self.metrics.increment("cruise.health_checks.total")
        self.metrics.increment("cruise.health_checks.success" if success else "cruise.health_checks.failed")
        self.metrics.record_histogram("cruise.health_checks.duration_ms", duration_ms)

        with self._lock:
            agent = self.agent_metrics.get(agent_id)
            if agent is None:
                return

            stats = agent.health_checks
            stats.total_checks += 1
            if success:
                stats.successful_checks += 1
            else:
                stats.failed_checks += 1
            stats.average_duration_ms += (duration_ms - stats.average_duration_ms) / stats.total_checks
            stats.unhealthy_positions_detected += unhealthy_positions
            stats.last_check_at = datetime.utcnow()

            if health_score is not None:
                agent.last_health_score = health_score
            if positions_count is not None:
                agent.positions_count = positions_count
            if total_value_sol is not None:
                agent.total_value_sol = total_value_sol
            agent.last_updated_at = datetime.utcnow()

    def record_emergency(self, agent_id: str):
        self.metrics.increment("cruise.emergencies.total")
        with self._lock:
            agent = self.agent_metrics.get(agent_id)
            if agent is not None:
                agent.health_checks.emergencies += 1

    def record_optimization(
        self,
        agent_id: str,
        success: bool,
        duration_ms: float = 0.0,
        actions_planned: int = 0,
        actions_succeeded: int = 0,
        capital_moved_sol: float = 0.0,
        health_improvement: float = 0.0
    ):
        self.metrics.increment("cruise.optimizations.total")
        self.metrics.increment("cruise.optimizations.success" if success else "cruise.optimizations.failed")
        self.metrics.increment("cruise.actions.planned", actions_planned)
        self.metrics.increment("cruise.actions.succeeded", actions_succeeded)
        self.metrics.increment("cruise.capital_moved_sol", capital_moved_sol)
        self.metrics.record_histogram("cruise.optimizations.duration_ms", duration_ms)

        with self._lock:
            agent = self.agent_metrics.get(agent_id)
            if agent is None:
                return

            stats = agent.optimizations
            stats.total_optimizations += 1
            if success:
                stats.successful_optimizations += 1
                # Running mean over successful optimizations only
                stats.average_health_improvement += (
                    (health_improvement - stats.average_health_improvement) / stats.successful_optimizations
                )
            else:
                stats.failed_optimizations += 1
            stats.average_duration_ms += (duration_ms - stats.average_duration_ms) / stats.total_optimizations
            stats.total_actions_planned += actions_planned
            stats.total_actions_succeeded += actions_succeeded
            stats.total_actions_failed += actions_planned - actions_succeeded
            stats.total_capital_moved_sol += capital_moved_sol
            stats.last_optimization_at = datetime.utcnow()
            agent.last_updated_at = datetime.utcnow()

    def update_task_metrics(self, total_tasks: int, enabled_tasks: int):
        self.metrics.set_gauge("cruise.tasks.total", total_tasks)
        self.metrics.set_gauge("cruise.tasks.enabled", enabled_tasks)

    def get_agent_metrics(self, agent_id: str) -> Optional[AgentMetrics]:
        with self._lock:
            return self.agent_metrics.get(agent_id)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Point-in-time aggregate across all agents"""
        counter = self.metrics.get_counter
        with self._lock:
            agents = [asdict(agent) for agent in self.agent_metrics.values()]

        return {
            "timestamp": datetime.utcnow().isoformat(),
            "uptime_seconds": int(time.time() - self.start_time),
            "memory_usage_mb": round(self._process.memory_info().rss / (1024 * 1024), 2),
            "registered_agents": len(agents),
            "health_checks": {
                "total": int(counter("cruise.health_checks.total")),
                "successful": int(counter("cruise.health_checks.success")),
                "failed": int(counter("cruise.health_checks.failed")),
            },
            "optimizations": {
                "total": int(counter("cruise.optimizations.total")),
                "successful": int(counter("cruise.optimizations.success")),
                "failed": int(counter("cruise.optimizations.failed")),
                "actions_planned": int(counter("cruise.actions.planned")),
                "actions_succeeded": int(counter("cruise.actions.succeeded")),
                "capital_moved_sol": counter("cruise.capital_moved_sol"),
            },
            "emergencies": int(counter("cruise.emergencies.total")),
            "tasks": {
                "total": int(self.metrics.get_gauge("cruise.tasks.total")),
                "enabled": int(self.metrics.get_gauge("cruise.tasks.enabled")),
            },
            "agents": agents,
        }

    async def start_reporting(self):
        """Start the periodic metrics report loop"""
        if self._report_task is not None:
            logger.warning("Metrics reporting is already running")
            return

        self._report_task = asyncio.create_task(self._reporting_loop())
        logger.info(f"Started metrics reporting with {self.report_interval}s interval")

    async def stop_reporting(self):
        if self._report_task is None:
            return

        self._report_task.cancel()
        try:
            await self._report_task
        except asyncio.CancelledError:
            pass
        self._report_task = None
        logger.info("Stopped metrics reporting")

    async def _reporting_loop(self):
        while True:
            await asyncio.sleep(self.report_interval)
            try:
                self.report_metrics()
            except Exception as e:
                logger.error("Error reporting metrics", error=str(e))

    def report_metrics(self):
        summary = self.get_metrics_summary()
        logger.info("Cruise metrics report",
                    uptime_seconds=summary["uptime_seconds"],
                    memory_usage_mb=summary["memory_usage_mb"],
                    registered_agents=summary["registered_agents"],
                    health_checks=summary["health_checks"],
                    optimizations=summary["optimizations"],
                    tasks=summary["tasks"])

        for agent in summary["agents"]:
            logger.info("Agent metrics",
                        agent_id=agent["agent_id"],
                        health_score=agent["last_health_score"],
                        positions=agent["positions_count"],
                        total_value_sol=agent["total_value_sol"],
                        health_checks=agent["health_checks"]["total_checks"],
                        optimizations=agent["optimizations"]["total_optimizations"])
