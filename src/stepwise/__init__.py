"""
Stepwise - workflow orchestration core.

Runs multi-step workflows across external targets (data-extraction
services, transform stages, cloud services, desktop-automation agents)
with per-target circuit breakers, retry with exponential backoff, and a
connection monitor that reconnects or proposes fallbacks.

Subpackages:
- stepwise.core: errors, logging, settings, clock helpers
- stepwise.execution: breakers, registry, retry, monitor, step dispatch
- stepwise.orchestration: workflow models and the orchestrator
"""

__version__ = "0.1.0"

from stepwise.core import *  # noqa: F401,F403

# orchestration before execution: step_executor imports the models while
# the orchestrator imports step_executor
from stepwise.orchestration import *  # noqa: F401,F403
from stepwise.execution import *  # noqa: F401,F403
