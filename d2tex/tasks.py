"""
d2tex.tasks — cooperative drivers for long-running algorithms.

The expensive steps (median cut, BestFit window search) are written as
generators: they ``yield`` a Progress checkpoint every N iterations and
``return`` their result.  A driver runs the generator to completion:

  run_task        plain loop, for scripts and tests
  run_task_async  awaits asyncio.sleep(0) at every checkpoint so other
                  tasks on the same event loop get a turn

Both check the optional CancelToken at each checkpoint, and both return the
exact same value for the same input.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Generator, Optional, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")


@dataclass(frozen=True)
class Progress:
    percent: float
    status: str


ProgressCallback = Callable[[Progress], None]
Steps = Generator[Progress, None, T]


class CancelToken:
    """Set once by the owner; observed by the task at its next checkpoint."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("operation cancelled")


def _checkpoint(progress: Progress,
                on_progress: Optional[ProgressCallback],
                token: Optional[CancelToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()
    if on_progress is not None:
        on_progress(progress)


def run_task(steps: Steps[T],
             on_progress: Optional[ProgressCallback] = None,
             token: Optional[CancelToken] = None) -> T:
    """Drive *steps* synchronously and return its result."""
    if token is not None:
        token.raise_if_cancelled()
    try:
        while True:
            _checkpoint(next(steps), on_progress, token)
    except StopIteration as stop:
        return stop.value
    finally:
        steps.close()


async def run_task_async(steps: Steps[T],
                         on_progress: Optional[ProgressCallback] = None,
                         token: Optional[CancelToken] = None) -> T:
    """Drive *steps* on the running event loop, yielding at every checkpoint."""
    if token is not None:
        token.raise_if_cancelled()
    try:
        while True:
            try:
                progress = next(steps)
            except StopIteration as stop:
                return stop.value
            _checkpoint(progress, on_progress, token)
            await asyncio.sleep(0)
    finally:
        steps.close()
