"""Mock long-running operation pollers."""

from __future__ import annotations

from typing import Any


class MockPoller:
    """Stands in for azure.core.polling.LROPoller.

    Args:
        result: Value returned by result().
        polls_until_done: Number of done() calls answering False before the
            operation completes. None means the operation never completes.
        error: Exception raised by result() instead of returning.
    """

    def __init__(
        self,
        result: Any = None,
        polls_until_done: int | None = 0,
        error: Exception | None = None,
    ) -> None:
        self._result = result
        self._remaining = polls_until_done
        self._error = error
        self.done_calls = 0

    def done(self) -> bool:
        self.done_calls += 1
        if self._remaining is None:
            return False
        if self._remaining > 0:
            self._remaining -= 1
            return False
        return True

    def result(self, timeout: float | None = None) -> Any:
        if self._error is not None:
            raise self._error
        return self._result

    def wait(self, timeout: float | None = None) -> None:
        return None
