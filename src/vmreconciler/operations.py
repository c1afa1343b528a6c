"""Deadlines and long-running operation polling.

Blocking SDK calls run in the default executor so many virtual machines can
be reconciled concurrently on one event loop. Every wait is bounded by a
Deadline; expiry raises OperationTimeoutError and leaves the remote operation
running.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from azure.core.exceptions import HttpResponseError

from .errors import OperationTimeoutError, RemoteRejectionError

logger = logging.getLogger(__name__)


class Poller(Protocol):
    """Handle returned by a begin_* call."""

    def done(self) -> bool: ...

    def result(self, timeout: float | None = None) -> Any: ...


@dataclass(frozen=True)
class Deadline:
    """A point in monotonic time after which waiting stops.

    Attributes:
        expires_at: time.monotonic() value at expiry.
        timeout_seconds: The budget the deadline was created with.
    """

    expires_at: float
    timeout_seconds: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(expires_at=time.monotonic() + seconds, timeout_seconds=seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def rejection_from(
    operation: str,
    error: HttpResponseError,
    rejection: type[RemoteRejectionError] = RemoteRejectionError,
) -> RemoteRejectionError:
    """Translate an SDK error into the reconciliation taxonomy."""
    error_code = getattr(getattr(error, "error", None), "code", None)
    return rejection(
        operation,
        error.message or str(error),
        status_code=error.status_code,
        error_code=error_code,
    )


async def run_blocking(
    func: Callable[..., Any],
    *args: Any,
    operation: str,
    deadline: Deadline,
    rejection: type[RemoteRejectionError] | None = RemoteRejectionError,
    **kwargs: Any,
) -> Any:
    """Run a blocking SDK call in the executor, bounded by the deadline.

    Args:
        func: Blocking callable.
        operation: Name used in errors and logs.
        deadline: Deadline the call must finish within.
        rejection: Error type for HttpResponseError; None lets SDK errors
            propagate unchanged.

    Raises:
        OperationTimeoutError: If the deadline expires first.
        RemoteRejectionError: If the API rejects the call and rejection is set.
    """
    if deadline.expired:
        raise OperationTimeoutError(operation, deadline.timeout_seconds)

    loop = asyncio.get_running_loop()
    call = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, call),
            timeout=deadline.remaining(),
        )
    except TimeoutError as e:
        raise OperationTimeoutError(operation, deadline.timeout_seconds) from e
    except HttpResponseError as e:
        if rejection is None:
            raise
        raise rejection_from(operation, e, rejection) from e


class LongRunningOperation:
    """A begin_* call plus the polling needed to see it through.

    Args:
        name: Operation name used in errors and logs.
        begin: Blocking callable returning a Poller.
        args: Positional arguments for begin.
        poll_interval: Seconds between done() checks.
        rejection: Error type raised when the API rejects the operation.
    """

    def __init__(
        self,
        name: str,
        begin: Callable[..., Poller],
        *args: Any,
        poll_interval: float,
        rejection: type[RemoteRejectionError] = RemoteRejectionError,
        **kwargs: Any,
    ) -> None:
        self.name = name
        self._begin = begin
        self._args = args
        self._kwargs = kwargs
        self._poll_interval = poll_interval
        self._rejection = rejection

    def __repr__(self) -> str:
        return f"LongRunningOperation(name={self.name!r})"

    async def _poll(self, poller: Poller) -> Any:
        loop = asyncio.get_running_loop()
        while not await loop.run_in_executor(None, poller.done):
            await asyncio.sleep(self._poll_interval)
        return await loop.run_in_executor(None, poller.result)

    async def run(self, deadline: Deadline) -> Any:
        """Start the operation and wait for its terminal result.

        Raises:
            OperationTimeoutError: If the deadline expires before completion.
            RemoteRejectionError: If the API rejects the start or the result.
        """
        started = time.monotonic()
        poller = await run_blocking(
            self._begin,
            *self._args,
            operation=self.name,
            deadline=deadline,
            rejection=self._rejection,
            **self._kwargs,
        )

        if deadline.expired:
            raise OperationTimeoutError(self.name, deadline.timeout_seconds)

        try:
            result = await asyncio.wait_for(self._poll(poller), timeout=deadline.remaining())
        except TimeoutError as e:
            logger.warning(
                "Long-running operation timed out; it may still be running remotely",
                extra={"operation": self.name, "timeout_seconds": deadline.timeout_seconds},
            )
            raise OperationTimeoutError(self.name, deadline.timeout_seconds) from e
        except HttpResponseError as e:
            raise rejection_from(self.name, e, self._rejection) from e

        logger.debug(
            "Long-running operation completed",
            extra={
                "operation": self.name,
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )
        return result
