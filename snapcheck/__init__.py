"""
snapcheck - black-box test harness for the Snap telemetry daemon

Derives the plugins example tasks need, loads them into a running daemon,
and drives each task through create, verify, stop and remove.
"""

__version__ = "0.1.0"


__all__ = ["HarnessConfig", "load_config", "Orchestrator"]

from .config import HarnessConfig, load_config
from .orchestrator import Orchestrator
