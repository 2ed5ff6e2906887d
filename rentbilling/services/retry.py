# rentbilling/services/retry.py
from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from ..config import settings
from ..errors import TransientError
from .runtime_metrics import METRICS

log = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth another attempt: dropped connections, lock timeouts, flaky collaborators
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, TransientError)


def backoff_seconds(retries: int, *, base: Optional[float] = None, cap: Optional[float] = None) -> float:
    """
    Exponential backoff with jitter.
    retries is the current retry count (0 for the first retry).
    """
    base_s = float(settings.billing_retry_base_seconds if base is None else base)
    cap_s = float(settings.billing_retry_max_seconds if cap is None else cap)

    delay = min(cap_s, base_s * (2 ** max(0, int(retries))))

    # jitter: +/- 20%
    jitter = delay * 0.2
    if jitter > 0:
        delay = max(0.0, delay + random.uniform(-jitter, jitter))
    return delay


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and getattr(exc, "connection_invalidated", False):
        return True
    return isinstance(exc, TRANSIENT_ERRORS)


def retry_transient(
    fn: Callable[[], T],
    *,
    attempts: Optional[int] = None,
    what: str = "operation",
    on_retry: Optional[Callable[[BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn() and retry it on transient errors with bounded backoff.

    Non-transient errors propagate immediately. The last transient error is
    re-raised once attempts run out.
    """
    max_attempts = max(1, int(attempts if attempts is not None else settings.billing_retry_attempts))

    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            if not is_transient(e) or attempt >= max_attempts:
                raise

            METRICS.inc("retry." + what)
            delay = backoff_seconds(attempt - 1)
            log.warning(
                "transient failure in %s, retrying in %.2fs: %s: %s",
                what,
                delay,
                type(e).__name__,
                e,
                extra={"attempt": attempt},
            )
            if on_retry is not None:
                on_retry(e)
            sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
