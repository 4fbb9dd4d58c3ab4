"""Retry with exponential backoff for transient infrastructure failures."""

import logging
import sys
from dataclasses import dataclass

import backoff

logger = logging.getLogger(__name__)


class TransientError(Exception):
    """A backing store, sink or channel is temporarily unreachable."""


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 2.0
    factor: float = 2.0

    def on_exception(self, retry_on=(TransientError,), **handlers):
        """A ``backoff.on_exception`` decorator for this policy.

        Waits are ``base_delay * factor ** n`` capped at ``max_delay``, without
        jitter, so the schedule is the same on every run.
        """
        return backoff.on_exception(
            backoff.expo, retry_on,
            max_tries=self.attempts,
            jitter=None,
            base=self.factor,
            factor=self.base_delay,
            max_value=self.max_delay,
            **handlers,
        )


NO_RETRY = RetryPolicy(attempts=1)


def failure(details) -> BaseException | None:
    """The exception behind a backoff handler call."""
    # Handlers run inside the except block.
    return details.get("exception") or sys.exc_info()[1]


def _log_backoff(details):
    logger.warning("%s failed (attempt %d): %s; retrying in %.2fs",
                   getattr(details["target"], "__qualname__", details["target"]),
                   details["tries"], failure(details), details["wait"])


def retry_call(fn, *args, policy: RetryPolicy = RetryPolicy(),
               retry_on=(TransientError,), **kwargs):
    """Call ``fn`` until it succeeds or the policy's attempts run out.

    Only exceptions in *retry_on* are retried; the last one is re-raised.
    """
    return policy.on_exception(retry_on, on_backoff=_log_backoff)(fn)(*args, **kwargs)
