"""Reliability primitives: bounded exponential backoff for async operations."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import PipelineError, as_pipeline_error

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay schedule between attempts (seconds).

    - initial_delay: wait after the first failed attempt
    - multiplier: growth factor per further failure
    - max_delay: cap on any single wait
    """
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Wait after the failed attempt with 0-based index ``attempt``."""
        return min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)

    @classmethod
    def from_config(cls, config) -> 'BackoffPolicy':
        return cls(
            initial_delay=config.initial_delay_ms / 1000.0,
            multiplier=config.backoff_multiplier,
            max_delay=config.max_delay_ms / 1000.0,
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    policy: Optional[BackoffPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times in total.

    Non-retryable kinds (client rejection, invalid data, configuration) are
    raised after the first attempt. Anything else is retried with backoff
    and the last classified error is raised once attempts run out.
    """
    if max_attempts < 1:
        raise ValueError('max_attempts must be >= 1')
    policy = policy or BackoffPolicy()
    last_error: Optional[PipelineError] = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = as_pipeline_error(e)
            if not last_error.retryable:
                logger.info(
                    'retry.not_retryable',
                    extra={'event': 'retry_not_retryable', 'kind': last_error.kind, 'attempt': attempt + 1},
                )
                if last_error is e:
                    raise
                raise last_error from e
            if attempt == max_attempts - 1:
                logger.warning(
                    'retry.exhausted',
                    extra={'event': 'retry_exhausted', 'kind': last_error.kind, 'attempts': max_attempts},
                )
                if last_error is e:
                    raise
                raise last_error from e
            delay = policy.delay_for(attempt)
            logger.warning(
                'retry.backoff',
                extra={
                    'event': 'retry_backoff',
                    'kind': last_error.kind,
                    'attempt': attempt + 1,
                    'delay_seconds': round(delay, 2),
                },
            )
            await sleep(delay)
    raise last_error  # pragma: no cover


__all__ = ['BackoffPolicy', 'with_retry']
