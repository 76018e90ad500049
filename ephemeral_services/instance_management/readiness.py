"""Waiting for a freshly launched instance to become ready."""

import logging
import time
import typing as tp

from ephemeral_services.instance_management import common
from ephemeral_services.utils import configuration
from ephemeral_services.utils import helpers

LOGGER = logging.getLogger(__name__)


class NotReadyError(Exception):
    """The probe got an answer, but the instance is not ready yet."""


def backoff_delays(
    interval: float = configuration.READINESS_POLL_INTERVAL,
    max_backoff: float = configuration.READINESS_MAX_BACKOFF,
) -> tp.Iterator[float]:
    """Yield linearly increasing sleep times, capped at `max_backoff`.

    >>> import itertools
    >>> list(itertools.islice(backoff_delays(interval=1, max_backoff=3), 5))
    [1, 2, 3, 3, 3]
    """
    repeat = 1
    while True:
        yield min(interval * repeat, max_backoff)
        repeat += 1


def await_ready(
    endpoint: str,
    probe: tp.Callable[[str], tp.Any],
    timeout: float,
    *,
    interval: float = configuration.READINESS_POLL_INTERVAL,
    max_backoff: float = configuration.READINESS_MAX_BACKOFF,
    is_transient: tp.Callable[[Exception], bool] | None = None,
) -> None:
    """Call `probe(endpoint)` until it succeeds or `timeout` seconds pass.

    Any exception raised by the probe is a transient failure, unless `is_transient` is
    given and returns False for it. Then the exception is re-raised right away, as it
    indicates a permanent problem (like wrong credentials) that waiting can't fix.
    The probe raises `NotReadyError` when the instance answers, but not with the "ready"
    status.

    Raises:
        ReadinessTimeoutError: The instance didn't become ready in time.
    """
    deadline = time.monotonic() + timeout
    delays = backoff_delays(interval=interval, max_backoff=max_backoff)
    attempt = 0

    while True:
        attempt += 1
        try:
            probe(endpoint)
        except Exception as exc:
            if is_transient is not None and not is_transient(exc):
                raise
            last_err = exc
        else:
            LOGGER.debug(f"Instance at '{endpoint}' ready after {attempt} probe(s).")
            return

        remaining = helpers.remaining_time(deadline)
        if not remaining:
            msg = (
                f"Instance at '{endpoint}' not ready after {timeout}s "
                f"({attempt} probes): {last_err}"
            )
            raise common.ReadinessTimeoutError(msg) from last_err

        sleep_time = min(next(delays), remaining)
        LOGGER.debug(
            f"Instance at '{endpoint}' not ready yet ({last_err}), "
            f"sleeping {sleep_time:.2f}s before next probe."
        )
        time.sleep(sleep_time)
