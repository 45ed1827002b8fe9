"""Reconnect delay with exponential growth and jitter."""

import random
from dataclasses import dataclass
from typing import Callable

_MAX_EXPONENT = 64


@dataclass(frozen=True)
class BackoffPolicy:
    """
    :param min_delay: First delay after a failure
    :param max_delay: Upper bound of the delay
    :param multiplier: Growth factor between consecutive failures
    :param jitter: Extra random delay as a fraction of the computed delay
    :param reset_after: Seconds of uninterrupted streaming needed before the delay goes back to ``min_delay``
    :param auth_min_delay: Floor applied after a rejected login
    """
    min_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    reset_after: float = 30.0
    auth_min_delay: float = 30.0


class Backoff:
    """
    Delay state of one session.

    Consecutive delays never decrease until :meth:`reset`. The jitter is only
    ever added, so it can spread sessions apart without making a delay shorter
    than the one before it.
    """

    def __init__(self, policy: BackoffPolicy, rng: Callable[[], float] = random.random):
        self.policy = policy
        self._rng = rng
        self.failures = 0
        self.last_delay = 0.0

    def next_delay(self, auth: bool = False) -> float:
        policy = self.policy
        cap = max(policy.max_delay, policy.auth_min_delay) if auth else policy.max_delay
        base = policy.min_delay * policy.multiplier ** min(self.failures, _MAX_EXPONENT)
        delay = base * (1 + self._rng() * policy.jitter)
        if auth:
            delay = max(delay, policy.auth_min_delay)
        delay = max(min(delay, cap), self.last_delay)
        self.failures += 1
        self.last_delay = delay
        return delay

    def streamed(self, duration: float) -> bool:
        """
        Reports how long the last connection streamed.

        :return: True when the delay was reset to the minimum
        """
        if duration >= self.policy.reset_after:
            self.reset()
            return True
        return False

    def reset(self) -> None:
        self.failures = 0
        self.last_delay = 0.0
