"""UTC timestamp and identifier helpers.

Components that compare times (breakers, the connection monitor, status
estimation) take a ``clock`` callable so tests can drive time explicitly;
:func:`utc_now` is the default.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def new_execution_id() -> str:
    """Generate a unique workflow execution id."""
    return f"exec_{uuid.uuid4().hex[:16]}"
