"""
metalkube/utils/async_poll.py

Provides a deadline-bounded polling primitive used at every phase boundary:
evaluate a cheap, read-only probe until it reports done or the deadline passes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

Probe = Callable[[], Awaitable[Tuple[bool, str]]]


class PollTimeoutError(Exception):
    """Raised when a probe never reported success before its deadline.

    Attributes:
        description (str): What was being waited for.
        timeout (float): The deadline budget in seconds.
        attempts (int): How many times the probe ran.
        last_detail (str): The last output/detail the probe reported.
        last_error (Optional[BaseException]): The last exception the probe raised.
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        attempts: int,
        last_detail: str = "",
        last_error: Optional[BaseException] = None,
    ) -> None:
        message = f"Timed out after {timeout}s ({attempts} attempts) waiting for {description}"
        if last_error is not None:
            message += f"; last error: {last_error}"
        elif last_detail:
            message += f"; last output: {last_detail}"
        super().__init__(message)
        self.description = description
        self.timeout = timeout
        self.attempts = attempts
        self.last_detail = last_detail
        self.last_error = last_error


class PollCancelledError(Exception):
    """Raised when the caller's cancel event was set while still polling."""

    def __init__(self, description: str, attempts: int) -> None:
        super().__init__(f"Cancelled after {attempts} attempt(s) waiting for {description}")
        self.description = description
        self.attempts = attempts


async def _sleep_or_cancel(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def poll_until(
    probe: Probe,
    *,
    timeout: float,
    interval: float = DEFAULT_POLL_INTERVAL,
    description: str = "condition",
    cancel_event: Optional[asyncio.Event] = None,
) -> None:
    """Repeatedly evaluate `probe` until it reports done or `timeout` elapses.

    The probe returns (done, detail). An exception raised by the probe counts as
    "not done yet" and is remembered for diagnostics. The first successful probe
    returns immediately without sleeping. The probe always runs at least once,
    even with a zero timeout.

    Cancellation of the surrounding task interrupts the sleep between attempts.
    Setting `cancel_event` does too: the in-flight probe is allowed to finish,
    then polling stops without another attempt.

    Args:
        probe: Async callable returning (done, detail).
        timeout: Overall deadline in seconds, measured from the first attempt.
        interval: Fixed delay between attempts, in seconds.
        description: Human-readable label used in logs and the timeout error.
        cancel_event: Optional caller cancellation signal.

    Raises:
        PollTimeoutError: If the deadline passes before the probe succeeds.
        PollCancelledError: If `cancel_event` is set before the probe succeeds.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    last_detail = ""
    last_error: Optional[BaseException] = None

    while True:
        attempts += 1
        try:
            done, detail = await probe()
        except Exception as exc:
            done, detail = False, ""
            last_error = exc
            logger.debug("Probe for %s raised: %s", description, exc)
        else:
            last_detail = detail
            last_error = None

        if done:
            logger.debug("%s satisfied after %d attempt(s)", description, attempts)
            return

        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelledError(description, attempts)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PollTimeoutError(
                description,
                timeout,
                attempts,
                last_detail=last_detail,
                last_error=last_error,
            )

        await _sleep_or_cancel(min(interval, remaining), cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelledError(description, attempts)
