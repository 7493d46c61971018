"""
Cruise orchestrator: agent lifecycle, health checks, emergency handling and
plan execution, driven by the task scheduler.
"""
import asyncio
import time
from typing import Dict, List, Optional, Any
import structlog

from .config import settings, ActionType, TaskKind, SYSTEM_TASK_TAG
from .collaborators import (
    AgentStateMachine, EmergencyHandler, FundsManager, RiskController, TransactionExecutor
)
from .error_handling import CollaboratorError, collaborator_call, error_collector
from .metrics import CruiseMetrics
from .models import (
    AgentConfig, FundsStatus, OptimizationAction, RegisteredAgent, RiskAssessment,
    TransactionRequest, TransactionType
)
from .planner import RebalancePlanner
from .scheduler import TaskScheduler

logger = structlog.get_logger()

ACTION_TRANSACTION_TYPES = {
    ActionType.REMOVE: TransactionType.REMOVE_LIQUIDITY,
    ActionType.ADD: TransactionType.ADD_LIQUIDITY,
    ActionType.ADJUST: TransactionType.REBALANCE_LIQUIDITY,
}

TASK_METRICS_TASK_ID = "system:task_metrics"


def agent_task_id(agent_id: str, kind: str) -> str:
    return f"agent:{agent_id}:{kind}"


class CruiseOrchestrator:
    """Runs the autonomous cruise loop for every registered agent"""

    def __init__(
        self,
        agent_state_machine: AgentStateMachine,
        transaction_executor: TransactionExecutor,
        funds_manager: FundsManager,
        risk_controller: RiskController,
        planner: RebalancePlanner,
        scheduler: Optional[TaskScheduler] = None,
        metrics: Optional[CruiseMetrics] = None,
        emergency_handler: Optional[EmergencyHandler] = None
    ):
        self.agent_state_machine = agent_state_machine
        self.transaction_executor = transaction_executor
        self.funds_manager = funds_manager
        self.risk_controller = risk_controller
        self.planner = planner
        self.scheduler = scheduler or TaskScheduler()
        self.metrics = metrics or CruiseMetrics()
        self.emergency_handler = emergency_handler

        self.registered_agents: Dict[str, RegisteredAgent] = {}
        self._registry_lock = asyncio.Lock()
        # One lock per agent id for the orchestrator's lifetime, never discarded
        self._optimization_locks: Dict[str, asyncio.Lock] = {}
        self.is_running = False

    async def start(self):
        """Start the scheduler and pick up every currently active agent"""
        if self.is_running:
            logger.info("Cruise orchestrator already running")
            return

        logger.info("Starting cruise orchestrator")
        await self.scheduler.start()
        self.is_running = True

        self.scheduler.schedule_recurring_task(
            TASK_METRICS_TASK_ID,
            self._update_task_metrics,
            settings.TASK_METRICS_INTERVAL_SECONDS,
            tags=[SYSTEM_TASK_TAG]
        )
        self._update_task_metrics()

        await self._register_active_agents()
        logger.info("Cruise orchestrator started", registered_agents=len(self.registered_agents))

    async def stop(self):
        """Stop the scheduler and drop every registration"""
        if not self.is_running:
            logger.info("Cruise orchestrator not running")
            return

        logger.info("Stopping cruise orchestrator")
        self.is_running = False
        await self.scheduler.stop()

        async with self._registry_lock:
            for agent_id in list(self.registered_agents):
                self.scheduler.cancel_tasks_by_tag(agent_id)
                self.metrics.unregister_agent(agent_id)
            self.registered_agents.clear()

        self.scheduler.cancel_tasks_by_tag(SYSTEM_TASK_TAG)
        self._update_task_metrics()
        logger.info("Cruise orchestrator stopped")

    async def _register_active_agents(self):
        try:
            async with collaborator_call("agent_state_machine", "get_active_agents"):
                active_agents = await self.agent_state_machine.get_active_agents()
        except CollaboratorError as e:
            logger.error("Failed to load active agents", error=str(e))
            return

        for agent in active_agents:
            await self.register_agent(agent.id, agent.config)

    async def register_agent(self, agent_id: str, config: AgentConfig) -> bool:
        """Register an agent and schedule its health, market and optimization tasks"""
        if not self.is_running:
            logger.warning("Cannot register agent - cruise orchestrator is not running", agent_id=agent_id)
            return False

        async with self._registry_lock:
            if agent_id in self.registered_agents:
                logger.info("Agent already registered", agent_id=agent_id)
                return True

            task_ids = self._setup_agent_tasks(agent_id, config)
            self.registered_agents[agent_id] = RegisteredAgent(
                agent_id=agent_id, config=config, task_ids=task_ids
            )
            self._optimization_locks.setdefault(agent_id, asyncio.Lock())
            self.metrics.register_agent(agent_id)

        logger.info("Agent registered for cruise control",
                    agent_id=agent_id,
                    health_check_interval_minutes=config.health_check_interval_minutes,
                    market_change_check_interval_minutes=config.market_change_check_interval_minutes,
                    optimization_interval_hours=config.optimization_interval_hours)
        return True

    async def unregister_agent(self, agent_id: str) -> bool:
        """Cancel an agent's tasks and forget it"""
        if not self.is_running:
            logger.warning("Cannot unregister agent - cruise orchestrator is not running", agent_id=agent_id)
            return False

        async with self._registry_lock:
            if self.registered_agents.pop(agent_id, None) is None:
                logger.info("Agent not registered, nothing to unregister", agent_id=agent_id)
                return True

            canceled = self.scheduler.cancel_tasks_by_tag(agent_id)
            self.metrics.unregister_agent(agent_id)

        logger.info("Agent unregistered from cruise control", agent_id=agent_id, canceled_tasks=canceled)
        return True

    def _setup_agent_tasks(self, agent_id: str, config: AgentConfig) -> List[str]:
        tags = [agent_id]
        schedule = self.scheduler.schedule_recurring_task
        return [
            schedule(
                agent_task_id(agent_id, TaskKind.HEALTH_CHECK),
                lambda: self.perform_health_check(agent_id),
                config.health_check_interval_seconds,
                tags=tags
            ),
            schedule(
                agent_task_id(agent_id, TaskKind.MARKET_CHECK),
                lambda: self.check_for_significant_changes(agent_id),
                config.market_change_check_interval_seconds,
                tags=tags
            ),
            schedule(
                agent_task_id(agent_id, TaskKind.OPTIMIZATION),
                lambda: self.optimize_positions(agent_id),
                config.optimization_interval_seconds,
                tags=tags
            ),
        ]

    def _get_registered_agent(self, agent_id: str, operation: str) -> Optional[RegisteredAgent]:
        if not self.is_running:
            logger.warning(f"Cannot run {operation} - cruise orchestrator is not running", agent_id=agent_id)
            return None

        agent = self.registered_agents.get(agent_id)
        if agent is None:
            logger.warning(f"Cannot run {operation} - agent not registered", agent_id=agent_id)
        return agent

    async def perform_health_check(self, agent_id: str) -> bool:
        """Check one agent's health; escalate breaches and optimize unhealthy positions"""
        agent = self._get_registered_agent(agent_id, "health check")
        if agent is None:
            return False

        logger.info("Performing health check", agent_id=agent_id)
        started = time.perf_counter()

        try:
            async with collaborator_call("agent_state_machine", "get_agent_state", agent_id):
                snapshot = await self.agent_state_machine.get_agent_state(agent_id)

            if not snapshot.state.is_active:
                logger.info("Agent is not running, skipping health check",
                            agent_id=agent_id, state=snapshot.state.value)
                return False

            async with collaborator_call("funds_manager", "get_agent_funds", agent_id):
                funds = await self.funds_manager.get_agent_funds(agent_id)

            async with collaborator_call("risk_controller", "assess_risk", agent_id):
                assessment = await self.risk_controller.assess_risk(agent_id)

            if self._breaches_emergency_thresholds(agent_id, agent.config, assessment):
                self._record_health_check(agent_id, True, started, funds, assessment)
                await self._handle_emergency(agent_id, assessment, funds)
                return True

            async with collaborator_call("pool_recommendation_source", "identify_unhealthy_positions", agent_id):
                unhealthy = await self.planner.identify_unhealthy_positions(funds.positions, assessment)

        except CollaboratorError as e:
            logger.error(f"Health check failed for agent {agent_id}", error=str(e))
            self.metrics.record_health_check(agent_id, False, self._elapsed_ms(started))
            return False

        self._record_health_check(agent_id, True, started, funds, assessment, len(unhealthy))

        if unhealthy:
            logger.info(f"Found {len(unhealthy)} unhealthy positions",
                        agent_id=agent_id,
                        pools=[p.pool_address for p in unhealthy])
            if settings.OPTIMIZE_ON_UNHEALTHY_POSITIONS:
                await self.optimize_positions(agent_id)
        else:
            logger.info("All positions are healthy", agent_id=agent_id)

        return True

    def _record_health_check(
        self,
        agent_id: str,
        success: bool,
        started: float,
        funds: FundsStatus,
        assessment: RiskAssessment,
        unhealthy_positions: int = 0
    ):
        self.metrics.record_health_check(
            agent_id,
            success,
            duration_ms=self._elapsed_ms(started),
            unhealthy_positions=unhealthy_positions,
            health_score=assessment.health_score,
            positions_count=len(funds.positions),
            total_value_sol=funds.total_value_sol
        )

    def _breaches_emergency_thresholds(
        self, agent_id: str, config: AgentConfig, assessment: RiskAssessment
    ) -> bool:
        thresholds = config.emergency_thresholds
        breaches = []
        if assessment.health_score < thresholds.min_health_score:
            breaches.append("health_score")
        if assessment.drawdown is not None and assessment.drawdown > thresholds.max_drawdown:
            breaches.append("drawdown")

        if breaches:
            logger.warning("Emergency thresholds breached",
                           agent_id=agent_id,
                           breaches=breaches,
                           health_score=assessment.health_score,
                           min_health_score=thresholds.min_health_score,
                           drawdown=assessment.drawdown,
                           max_drawdown=thresholds.max_drawdown)
        return bool(breaches)

    async def _handle_emergency(self, agent_id: str, assessment: RiskAssessment, funds: FundsStatus):
        self.metrics.record_emergency(agent_id)

        if self.emergency_handler is None:
            logger.warning("No emergency handler configured, emergency not escalated", agent_id=agent_id)
            return

        try:
            await self.emergency_handler(agent_id, assessment, funds)
        except Exception as e:
            logger.error(f"Emergency handler failed for agent {agent_id}", error=str(e))
            error_collector.record_error(e, {"agent_id": agent_id, "operation": "emergency_handler"})

    async def optimize_positions(self, agent_id: str) -> bool:
        """Plan and execute one optimization cycle. At most one runs per agent at a time."""
        if self._get_registered_agent(agent_id, "optimization") is None:
            return False

        lock = self._optimization_locks.setdefault(agent_id, asyncio.Lock())
        if lock.locked():
            logger.info("Optimization already in progress, waiting", agent_id=agent_id)

        async with lock:
            # Re-check: the agent may have been dropped while waiting
            agent = self._get_registered_agent(agent_id, "optimization")
            if agent is None:
                return False
            return await self._run_optimization(agent)

    async def _run_optimization(self, agent: RegisteredAgent) -> bool:
        agent_id = agent.agent_id
        logger.info("Optimizing positions", agent_id=agent_id)
        started = time.perf_counter()

        try:
            async with collaborator_call("funds_manager", "get_agent_funds", agent_id):
                funds = await self.funds_manager.get_agent_funds(agent_id)
        except CollaboratorError as e:
            logger.error(f"Failed to optimize positions for agent {agent_id}", error=str(e))
            self.metrics.record_optimization(agent_id, False, self._elapsed_ms(started))
            return False

        plan = await self.planner.calculate_optimal_positions(agent_id, funds, agent.config)
        if plan is None:
            self.metrics.record_optimization(agent_id, False, self._elapsed_ms(started))
            return False

        if plan.is_empty:
            logger.info("No optimization needed", agent_id=agent_id)
            self.metrics.record_optimization(agent_id, True, self._elapsed_ms(started))
            return True

        logger.info(f"Executing {len(plan.actions)} optimization actions", agent_id=agent_id)

        succeeded = 0
        capital_moved = 0.0
        for action in plan.actions:
            if await self._execute_action(agent_id, action):
                succeeded += 1
                capital_moved += action.capital_moved_sol

        if succeeded < len(plan.actions):
            logger.warning("Some optimization actions failed",
                           agent_id=agent_id,
                           planned=len(plan.actions),
                           succeeded=succeeded)

        self.metrics.record_optimization(
            agent_id,
            True,
            duration_ms=self._elapsed_ms(started),
            actions_planned=len(plan.actions),
            actions_succeeded=succeeded,
            capital_moved_sol=capital_moved,
            health_improvement=plan.expected_health_improvement
        )
        return True

    async def _execute_action(self, agent_id: str, action: OptimizationAction) -> bool:
        request = TransactionRequest(
            type=ACTION_TRANSACTION_TYPES[action.type],
            agent_id=agent_id,
            data=action.transaction_data()
        )

        try:
            async with collaborator_call("transaction_executor", "execute_transaction", agent_id):
                result = await self.transaction_executor.execute_transaction(request)
        except CollaboratorError as e:
            logger.error(f"Error executing {action.type} action",
                         agent_id=agent_id, pool_address=action.pool_address, error=str(e))
            return False

        if not result.success:
            logger.warning(f"Failed to execute {action.type} action",
                           agent_id=agent_id, pool_address=action.pool_address, error=result.error)
            return False

        logger.info(f"Executed {action.type} action",
                    agent_id=agent_id, pool_address=action.pool_address, signature=result.signature)
        return True

    async def check_for_significant_changes(self, agent_id: str) -> bool:
        """Look for market moves on held pools and optimize when any are found"""
        if self._get_registered_agent(agent_id, "market change check") is None:
            return False

        logger.info("Checking for significant market changes", agent_id=agent_id)

        try:
            async with collaborator_call("funds_manager", "get_agent_funds", agent_id):
                funds = await self.funds_manager.get_agent_funds(agent_id)

            async with collaborator_call("pool_recommendation_source", "check_for_significant_changes", agent_id):
                changed = await self.planner.check_for_significant_changes(agent_id, funds.positions)
        except CollaboratorError as e:
            logger.error(f"Market change check failed for agent {agent_id}", error=str(e))
            return False

        if not changed:
            logger.info("No significant market changes", agent_id=agent_id)
            return True

        logger.info(f"Significant changes on {len(changed)} positions",
                    agent_id=agent_id,
                    pools=[p.pool_address for p in changed])
        if settings.OPTIMIZE_ON_MARKET_CHANGE:
            await self.optimize_positions(agent_id)
        return True

    def get_registered_agent_count(self) -> int:
        return len(self.registered_agents)

    def is_agent_registered(self, agent_id: str) -> bool:
        return agent_id in self.registered_agents

    def get_health(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.is_running else "stopped",
            "scheduler_running": self.scheduler.is_running,
            "registered_agents": len(self.registered_agents),
            "total_tasks": self.scheduler.get_task_count(),
            "enabled_tasks": self.scheduler.get_enabled_task_count(),
            "errors": error_collector.get_error_summary(hours=1)["total_errors"],
        }

    def get_metrics_summary(self) -> Dict[str, Any]:
        self._update_task_metrics()
        return self.metrics.get_metrics_summary()

    def _update_task_metrics(self):
        self.metrics.update_task_metrics(
            self.scheduler.get_task_count(),
            self.scheduler.get_enabled_task_count()
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000
