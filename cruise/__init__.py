"""
Cruise Control - Autonomous Liquidity Position Management

This package runs the autonomous cruise-control loop for capital-allocation
agents holding liquidity positions in external pools.

Key Features:
- Tick-driven task scheduler with per-agent tags
- Periodic health checks with emergency threshold escalation
- Market change detection with cached 24h price moves
- Rebalancing plans (reduce, adjust, add) that never touch the reserve
- Ordered transaction submission with per-action isolation
- Per-agent metrics and periodic summaries
- HTTP client for the signal service recommendation API
- Structured logging with structlog

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import settings
from .main import configure_logging, create_cruise_orchestrator, cruise_lifespan
from .orchestrator import CruiseOrchestrator
from .planner import RebalancePlanner
from .scheduler import TaskScheduler

__all__ = [
    "settings",
    "configure_logging",
    "create_cruise_orchestrator",
    "cruise_lifespan",
    "CruiseOrchestrator",
    "RebalancePlanner",
    "TaskScheduler",
]
