"""Fallback chain for resilient model invocation.

The FallbackChain walks a RoutingDecision: the selected model first, then
each fallback in order. Only transient failures move on to the next model:
- Provider timeouts
- Connection errors
- Explicit TransientModelError (rate limited, overloaded, 5xx)

Anything else is a bug or a bad request and propagates immediately, since
retrying it on another model would only repeat it.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from traffic_shaper.model_router.router import RoutingDecision

log = structlog.get_logger(__name__)

T = TypeVar("T")


class TransientModelError(Exception):
    """A model call failed in a way another model may not (overload, 5xx)."""


class AllModelsFailedError(RuntimeError):
    """Every model in the decision failed transiently."""

    def __init__(self, attempted: list[str], last_error: BaseException | None) -> None:
        self.attempted = attempted
        self.last_error = last_error
        super().__init__(
            f"All models failed ({', '.join(attempted)}). Last error: {last_error}"
        )


def is_transient(exc: BaseException) -> bool:
    """Default retry predicate."""
    return isinstance(exc, (TransientModelError, TimeoutError, ConnectionError))


class FallbackChain:
    """Invokes the selected model, falling back through the decision's list.

    Each failure is recorded for observability; see get_fallback_events().
    """

    def __init__(
        self,
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient,
    ) -> None:
        self._is_retryable = is_retryable
        self._fallback_events: list[dict[str, Any]] = []

    async def execute(
        self,
        decision: RoutingDecision,
        invoke: Callable[[str], Awaitable[T]],
    ) -> tuple[T, str]:
        """Call ``invoke(model_id)`` until one model succeeds.

        Returns:
            Tuple of (result, model_id that produced it)

        Raises:
            AllModelsFailedError: If every model failed transiently
            Exception: The first non-transient error, unchanged
        """
        execution_order = [decision.selected_model, *decision.fallbacks]
        attempted: list[str] = []
        last_error: BaseException | None = None

        for index, model_id in enumerate(execution_order):
            attempted.append(model_id)
            try:
                result = await invoke(model_id)
            except Exception as exc:
                if not self._is_retryable(exc):
                    log.error(
                        "fallback_chain.non_transient_error",
                        request_id=decision.request_id,
                        model_id=model_id,
                        error_type=type(exc).__name__,
                    )
                    raise

                last_error = exc
                self._fallback_events.append(
                    {
                        "request_id": decision.request_id,
                        "model_id": model_id,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                )
                log.warning(
                    "fallback_chain.model_failed",
                    request_id=decision.request_id,
                    model_id=model_id,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                    remaining_models=len(execution_order) - index - 1,
                )
                continue

            log.info(
                "fallback_chain.model_succeeded",
                request_id=decision.request_id,
                model_id=model_id,
                selected_model=decision.selected_model,
                fallback_occurred=model_id != decision.selected_model,
            )
            return result, model_id

        log.error(
            "fallback_chain.all_models_failed",
            request_id=decision.request_id,
            attempted_models=attempted,
        )
        raise AllModelsFailedError(attempted, last_error)

    def get_fallback_events(self) -> list[dict[str, Any]]:
        """Copy of the transient failures seen so far."""
        return self._fallback_events.copy()

    def reset_events(self) -> None:
        """Clear fallback event history. Used for testing."""
        self._fallback_events.clear()
