"""Bounded readiness polling.

Process start is asynchronous relative to a service becoming ready, so
steps that start something follow up with a Verifier rather than a fixed
sleep.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Awaitable

from .errors import VerificationTimeout

logger = logging.getLogger(__name__)


@dataclass
class Health:
    """Result of a verifier wait."""

    healthy: bool
    attempts: int
    elapsed: float
    last_observed: Optional[str] = None


class Verifier:
    """Polls a check at a fixed interval until it passes or time runs out.

    The timeout is strict: no check is started at or after the deadline,
    so a condition that would become true later still yields an unhealthy
    result. Waiting uses asyncio.sleep and is cancelled with the enclosing
    task.

    ``check`` is a zero-argument callable returning bool; if it has a
    ``detail`` attribute (see probes.Probe) that text is reported as the
    last observed state. Checks run in a worker thread since most of them
    shell out or do network I/O.
    """

    def __init__(
        self,
        check: Callable[[], bool],
        interval: float = 5.0,
        timeout: float = 60.0,
        name: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self.check = check
        self.interval = interval
        self.timeout = timeout
        self.name = name or getattr(check, 'name', None) or repr(check)
        self._clock = clock
        self._sleep = sleep

    async def wait(self) -> Health:
        """Poll until healthy or the deadline passes."""
        start = self._clock()
        deadline = start + self.timeout
        attempts = 0
        last_observed = None

        while True:
            attempts += 1
            try:
                healthy = await asyncio.get_running_loop().run_in_executor(None, self.check)
                last_observed = getattr(self.check, 'detail', None) or last_observed
            except asyncio.CancelledError:
                raise
            except Exception as e:
                healthy = False
                last_observed = f"{type(e).__name__}: {e}"

            now = self._clock()
            if healthy:
                if now > deadline:
                    # Answer arrived too late to count
                    logger.debug(f"{self.name}: became ready after the deadline")
                    break
                logger.info(f"{self.name}: ready after {attempts} check(s), {now - start:.1f}s")
                return Health(True, attempts, now - start, last_observed)

            if now + self.interval >= deadline:
                break
            logger.debug(f"{self.name}: not ready ({last_observed}), next check in {self.interval}s")
            await self._sleep(self.interval)

        elapsed = self._clock() - start
        logger.warning(f"{self.name}: not ready after {attempts} check(s), {elapsed:.1f}s")
        return Health(False, attempts, elapsed, last_observed)

    async def require(self) -> Health:
        """Like wait(), but raise VerificationTimeout when unhealthy."""
        health = await self.wait()
        if not health.healthy:
            raise VerificationTimeout(
                f"{self.name} not ready within {self.timeout:g}s ({health.attempts} checks)",
                last_observed=health.last_observed,
                attempts=health.attempts,
            )
        return health
