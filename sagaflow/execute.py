"""Step execution with bounded retry and per-attempt timeout."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic_core import PydanticSerializationError, to_jsonable_python

from .contracts import StepContext
from .errors import ActionError, StepTimeout
from .registry import Action, ActionRegistry, RetryPolicy
from .utils import retry as retry_utils

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """Successful action outcome and the number of attempts it took."""

    result: Any
    attempts: int


class StepExecutor:
    """Invokes a single forward or compensation action.

    A pure invocation helper: it reports outcomes to the caller and never
    touches execution state.

    Plain callables run on a worker thread. A thread that times out is
    abandoned, not interrupted, so such actions must tolerate running on after
    their attempt has been given up.
    """

    def __init__(self, actions: ActionRegistry) -> None:
        self._actions = actions

    async def run(
        self,
        action: Union[str, Action],
        context: StepContext,
        idempotency_key: str,
        retry: RetryPolicy,
        timeout: Optional[float] = None,
    ) -> StepResult:
        """Run ``action`` until it succeeds or the retry budget is spent.

        Raises:
            ActionError: the action failed on its last attempt, or failed with
                ``retryable=False``.
            StepTimeout: the last attempt timed out.
        """
        fn = self._actions.get(action) if isinstance(action, str) else action
        name = action if isinstance(action, str) else getattr(fn, "__name__", repr(fn))

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._invoke(fn, context, idempotency_key, timeout)
            except (ActionError, StepTimeout) as e:
                logger.warning(
                    f"Action {name} attempt {attempt}/{retry.max_attempts} failed "
                    f"for key={idempotency_key}: {e}"
                )
                retryable = not isinstance(e, ActionError) or e.retryable
                if not retryable or attempt >= retry.max_attempts:
                    e.attempts = attempt
                    raise
                await retry_utils.schedule_retry(retry.delay(attempt))
                continue

            logger.debug(f"Action {name} succeeded on attempt {attempt} for key={idempotency_key}")
            return StepResult(result=result, attempts=attempt)

    async def _invoke(
        self,
        fn: Action,
        context: StepContext,
        idempotency_key: str,
        timeout: Optional[float],
    ) -> Any:
        ctx = context.model_copy(deep=True)
        try:
            if inspect.iscoroutinefunction(fn):
                call = fn(ctx, idempotency_key)
            else:
                # plain callables run on a thread so the timeout applies to them
                call = asyncio.to_thread(fn, ctx, idempotency_key)
            outcome = await asyncio.wait_for(call, timeout)
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout)
        except asyncio.TimeoutError:
            raise StepTimeout(f"Action timed out after {timeout}s") from None
        except ActionError:
            raise
        except Exception as e:
            raise ActionError(f"{type(e).__name__}: {e}") from e

        try:
            return to_jsonable_python(outcome)
        except PydanticSerializationError as e:
            raise ActionError(
                f"Action result of type {type(outcome).__name__} is not serializable: {e}",
                retryable=False,
            ) from e
