"""Configurable retry strategy for transient adapter failures."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

__all__ = ["RetryPolicy", "run_with_retry", "backoff_delay"]

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Retry configuration with capped exponential backoff."""

    model_config = ConfigDict(frozen=True)

    attempts: PositiveInt = Field(5, description="Maximum number of attempts before surfacing the error.")
    initial_backoff: PositiveFloat = Field(
        0.05,
        description="Backoff interval in seconds before the first retry.",
    )
    max_backoff: PositiveFloat = Field(
        2.0,
        description="Upper bound for the exponential backoff window.",
    )

    def build(
        self,
        *,
        logger: logging.Logger,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] | None = None,
    ) -> Retrying:
        """Return a configured :class:`~tenacity.Retrying` instance."""

        kwargs: dict[str, object] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        return Retrying(
            stop=stop_after_attempt(int(self.attempts)),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            **kwargs,
        )


def run_with_retry(
    policy: RetryPolicy,
    logger: logging.Logger,
    operation: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Execute *operation* applying the supplied retry policy."""

    retrying = policy.build(logger=logger, retry_on=retry_on, sleep=sleep)
    for attempt in retrying:
        with attempt:
            return operation()
    raise RuntimeError("Retrying loop exited unexpectedly")


def backoff_delay(attempt: int, *, initial: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (1-based), doubling up to ``maximum``."""

    if attempt < 1:
        return 0.0
    return min(maximum, initial * (2 ** (attempt - 1)))
