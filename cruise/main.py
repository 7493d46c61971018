import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import structlog

from .config import settings
from .error_handling import ConfigurationError
from .collaborators import (
    AgentStateMachine, EmergencyHandler, FundsManager, PoolRecommendationSource,
    RiskController, TransactionExecutor
)
from .external_apis import BaseAPIClient, SignalServiceClient
from .metrics import CruiseMetrics
from .orchestrator import CruiseOrchestrator
from .planner import RebalancePlanner
from .scheduler import TaskScheduler

logger = structlog.get_logger()


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None):
    """Configure structured logging"""
    level = (log_level or settings.LOG_LEVEL).upper()
    log_format = log_format or settings.LOG_FORMAT
    if log_format not in ("json", "console"):
        raise ConfigurationError(f"Unsupported log format: {log_format}")

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_cruise_orchestrator(
    agent_state_machine: AgentStateMachine,
    transaction_executor: TransactionExecutor,
    funds_manager: FundsManager,
    risk_controller: RiskController,
    recommendation_source: Optional[PoolRecommendationSource] = None,
    emergency_handler: Optional[EmergencyHandler] = None
) -> CruiseOrchestrator:
    """Wire an orchestrator with its own scheduler, planner and metrics.

    Without an explicit recommendation source the signal service client is used.
    """
    source = recommendation_source or SignalServiceClient()
    return CruiseOrchestrator(
        agent_state_machine=agent_state_machine,
        transaction_executor=transaction_executor,
        funds_manager=funds_manager,
        risk_controller=risk_controller,
        planner=RebalancePlanner(source),
        scheduler=TaskScheduler(),
        metrics=CruiseMetrics(),
        emergency_handler=emergency_handler
    )


@asynccontextmanager
async def cruise_lifespan(orchestrator: CruiseOrchestrator) -> AsyncIterator[CruiseOrchestrator]:
    """Run the cruise loop for the duration of the block"""
    startup_start_time = time.time()
    logger.info("Starting cruise control", env=settings.ENV)

    source = orchestrator.planner.recommendation_source
    http_client = source if isinstance(source, BaseAPIClient) else None

    try:
        if http_client is not None:
            await http_client.open()

        await orchestrator.start()
        await orchestrator.metrics.start_reporting()

        logger.info("Cruise control ready",
                    registered_agents=orchestrator.get_registered_agent_count(),
                    startup_time_seconds=round(time.time() - startup_start_time, 2))

    except Exception as e:
        logger.error("Failed to start cruise control", error=str(e))
        await orchestrator.stop()
        if http_client is not None:
            await http_client.close()
        raise

    try:
        yield orchestrator
    finally:
        logger.info("Shutting down cruise control")
        await orchestrator.metrics.stop_reporting()
        await orchestrator.stop()
        if http_client is not None:
            await http_client.close()
        logger.info("Cruise control shutdown complete")
