"""User-facing notifications and the celebratory side-effect.

Both are fire-and-forget collaborators of the pipeline core:
- Notifier: transient success/error messages (a toast in the UI)
- fire_celebration(): runs the celebration hook when a deal lands in a won
  stage. Its failure is logged and never propagates into board state.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.crm.pipeline.schemas import Deal, Stage

logger = structlog.get_logger(__name__)

CelebrationHook = Callable[[Deal, Stage], Awaitable[Any] | Any]

# Strong references to scheduled celebration tasks until they finish
_background_tasks: set[asyncio.Task] = set()


class Notifier(ABC):
    """Abstract sink for user-visible notifications."""

    @abstractmethod
    def success(self, message: str, **context: Any) -> None:
        """Surface a success message."""
        ...

    @abstractmethod
    def error(self, message: str, **context: Any) -> None:
        """Surface an error message."""
        ...


class LoggingNotifier(Notifier):
    """Notifier that writes notifications to the structured log."""

    def success(self, message: str, **context: Any) -> None:
        logger.info("notification.success", message=message, **context)

    def error(self, message: str, **context: Any) -> None:
        logger.warning("notification.error", message=message, **context)


class RecordingNotifier(Notifier):
    """Notifier that keeps messages in memory, newest last.

    Used by the HTTP layer to return messages with a response and by tests.
    """

    def __init__(self) -> None:
        self.successes: list[str] = []
        self.errors: list[str] = []

    def success(self, message: str, **context: Any) -> None:
        self.successes.append(message)

    def error(self, message: str, **context: Any) -> None:
        self.errors.append(message)


def _log_task_failure(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "celebration.failed",
            error=str(exc),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def fire_celebration(hook: CelebrationHook | None, deal: Deal, stage: Stage) -> bool:
    """Invoke the celebration hook without waiting on or propagating its result.

    Coroutine hooks are scheduled on the running loop. Returns True when the
    hook was invoked (or scheduled) without raising synchronously.
    """
    if hook is None:
        return False
    try:
        result = hook(deal, stage)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            _background_tasks.add(task)
            task.add_done_callback(_log_task_failure)
    except Exception as exc:
        logger.warning(
            "celebration.failed",
            deal_id=deal.id,
            stage_id=stage.id,
            error=str(exc),
            exc_info=True,
        )
        return False

    logger.info("celebration.fired", deal_id=deal.id, stage_name=stage.name)
    return True
