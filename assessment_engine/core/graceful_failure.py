"""
Best-effort boundaries inside the engine.

Some steps must not take the caller down with them: a listener handling an
event, tagging events with the session's strategy, or leaving a PENDING result
shell after scoring has already failed. ``graceful_failure`` runs such a step,
logs the exception with the operation's correlation fields, counts it by
exception type and lets execution continue.

Usage:
    with graceful_failure("write pending result", logger, context=ctx) as step:
        ...
    if step.failed:
        ...
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional

from assessment_engine.core.logging_config import OperationContext
from assessment_engine.observability import capture_error, metrics


@dataclass
class StepOutcome:
    """What happened inside a graceful_failure block."""

    operation: str
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@contextmanager
def graceful_failure(
    operation_name: str,
    logger: logging.Logger,
    *,
    context: Optional[OperationContext] = None,
    log_level: int = logging.WARNING,
    exc_info: bool = False,
    report: bool = False,
) -> Generator[StepOutcome, None, None]:
    """Run a non-critical step, swallowing and recording any exception.

    Args:
        operation_name: Human-readable step name (e.g. "write pending result").
        logger: Logger of the calling module.
        context: Correlation fields added to the message and to ``extra``.
        log_level: Level of the failure log entry.
        exc_info: Include the traceback in the log entry.
        report: Also send the exception to error tracking.
    """
    outcome = StepOutcome(operation=operation_name)
    try:
        yield outcome
    except Exception as e:
        outcome.error = e
        extra = context.log_extra() if context is not None else {}
        fields = {k: v for k, v in extra.items() if k != "operation"}
        if fields:
            detail = ", ".join(f"{k}={v}" for k, v in fields.items())
            message = f"Failed to {operation_name} ({detail}): {e}"
        else:
            message = f"Failed to {operation_name}: {e}"

        logger.log(log_level, message, exc_info=exc_info, extra=extra)
        metrics.record_error(error_type=type(e).__name__)
        if report:
            capture_error(e, operation=operation_name)
