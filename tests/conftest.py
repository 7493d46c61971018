import pytest
import os
from unittest.mock import AsyncMock
from typing import List

import pytest_asyncio

# Set test environment
os.environ["CRUISE_ENV"] = "test"
os.environ["CRUISE_LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["CRUISE_SIGNAL_SERVICE_URL"] = "http://signal.test"

from cruise.error_handling import error_collector
from cruise.metrics import CruiseMetrics
from cruise.models import (
    ActiveAgent, AgentConfig, AgentState, AgentStateSnapshot, FundsStatus,
    PoolRecommendation, Position, RiskAssessment, TransactionResult
)
from cruise.orchestrator import CruiseOrchestrator
from cruise.planner import RebalancePlanner
from cruise.scheduler import TaskScheduler


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def clear_error_collector():
    error_collector.clear()
    yield
    error_collector.clear()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def sample_agent_id():
    return "agent-alpha"

@pytest.fixture
def agent_config():
    """Default cruise policy with a 1 SOL reserve"""
    return AgentConfig(min_sol_balance=1.0, name="Alpha")

@pytest.fixture
def sample_positions() -> List[Position]:
    return [
        Position(pool_address="pool-1", value_sol=10.0, value_usd=1500.0),
        Position(pool_address="pool-2", value_sol=4.0, value_usd=600.0),
    ]

@pytest.fixture
def sample_funds(sample_positions):
    return FundsStatus(total_value_sol=19.0, available_sol=5.0, positions=sample_positions)

@pytest.fixture
def healthy_assessment(sample_agent_id):
    return RiskAssessment(agent_id=sample_agent_id, health_score=4.2, risk_level="low")

@pytest.fixture
def recommendations():
    """pool_address -> PoolRecommendation served by the mock source"""
    return {}

@pytest.fixture
def recommendation_source(recommendations):
    source = AsyncMock()

    async def get_recommendation(pool_address: str):
        return recommendations.get(pool_address)

    source.get_recommendation.side_effect = get_recommendation
    return source

@pytest.fixture
def agent_state_machine(agent_config):
    mock = AsyncMock()
    mock.get_active_agents.return_value = []
    mock.get_agent_state.return_value = AgentStateSnapshot(state=AgentState.RUNNING, config=agent_config)
    return mock

@pytest.fixture
def funds_manager(sample_funds):
    mock = AsyncMock()
    mock.get_agent_funds.return_value = sample_funds
    return mock

@pytest.fixture
def risk_controller(healthy_assessment):
    mock = AsyncMock()
    mock.assess_risk.return_value = healthy_assessment
    return mock

@pytest.fixture
def transaction_executor():
    mock = AsyncMock()
    mock.execute_transaction.return_value = TransactionResult(success=True, signature="sig")
    return mock

@pytest.fixture
def planner(recommendation_source, clock):
    return RebalancePlanner(recommendation_source, clock=clock)

@pytest.fixture
def scheduler(clock):
    return TaskScheduler(tick_interval=0.01, clock=clock)

@pytest.fixture
def metrics():
    return CruiseMetrics(report_interval_seconds=0.01)

@pytest.fixture
def emergency_handler():
    return AsyncMock()

@pytest.fixture
def orchestrator(agent_state_machine, transaction_executor, funds_manager, risk_controller,
                 planner, scheduler, metrics, emergency_handler):
    return CruiseOrchestrator(
        agent_state_machine=agent_state_machine,
        transaction_executor=transaction_executor,
        funds_manager=funds_manager,
        risk_controller=risk_controller,
        planner=planner,
        scheduler=scheduler,
        metrics=metrics,
        emergency_handler=emergency_handler
    )

@pytest_asyncio.fixture
async def running_orchestrator(orchestrator):
    """Started orchestrator, stopped on teardown"""
    await orchestrator.start()
    yield orchestrator
    await orchestrator.stop()
    await orchestrator.scheduler.drain()

@pytest.fixture
def make_recommendation():
    def _make(**overrides) -> PoolRecommendation:
        data = {"health_score": 4.0, "action": "maintain"}
        data.update(overrides)
        return PoolRecommendation(**data)
    return _make

@pytest.fixture
def active_agent(agent_config):
    return ActiveAgent(id="agent-from-state-machine", config=agent_config)
