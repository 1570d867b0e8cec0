#!/usr/bin/env python3
"""Bounded polling with a fixed interval."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from certrenew_libs.errors import PollTimeoutError, ResourceLookupError
from certrenew_libs.k8s.kubernetes import KubernetesApiError

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL_SECONDS = 10


@dataclass(frozen=True)
class PollPolicy:
    """How many times, and how often, to check for something before giving up.

    With the defaults, anything is waited for at most 5 minutes.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        """Validate."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.interval_seconds < 0:
            raise ValueError(f"interval_seconds can't be negative, got {self.interval_seconds}")

    def wait_for(
        self,
        check: Callable[[], bool],
        description: str,
        tolerated: tuple[type[Exception], ...] = (KubernetesApiError, ResourceLookupError),
    ) -> int:
        """Call `check` until it returns True, returns the number of attempts it took.

        Errors of the `tolerated` types are logged and count as a failed attempt, anything else is propagated.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                if check():
                    LOGGER.debug("%s: done after %d attempts", description, attempt)
                    return attempt
            except tolerated as error:
                LOGGER.warning("%s: attempt %d/%d failed: %s", description, attempt, self.max_attempts, error)
            else:
                LOGGER.debug("%s: not yet (attempt %d/%d)", description, attempt, self.max_attempts)

            if attempt < self.max_attempts:
                self.sleep(self.interval_seconds)

        raise PollTimeoutError(what=description, attempts=self.max_attempts)
