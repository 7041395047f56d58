"""Completion Waiter: poll execution units until they reach a terminal state.

``docker inspect`` is a blocking subprocess call, so every poll runs in
a worker thread via :func:`asyncio.to_thread`; the event loop stays free
to poll the other members of the batch and to receive a cancellation.

A failure to observe one unit never escapes :meth:`CompletionWaiter.wait_all`;
it becomes a synthetic exit code for that unit only.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence

from ralph.core.errors import RalphError
from ralph.core.logging import get_logger
from ralph.deploy.container import ContainerManager
from ralph.parallel.models import ExecutionHandle, UnitResult

logger = get_logger(__name__)

# synthetic exit codes
EXIT_UNIT_MISSING = 1
EXIT_UNIT_UNOBSERVABLE = 125
EXIT_WAIT_TIMEOUT = 124

DEFAULT_MAX_POLL_ERRORS = 3


class CompletionWaiter:
    """Waits for execution units started by the launcher.

    Parameters
    ----------
    containers
        Container manager used for ``inspect`` and, on timeout, ``stop``.
    poll_interval
        Seconds between two state polls of one unit.
    max_wait
        Optional ceiling in seconds. ``None`` waits indefinitely.
    max_poll_errors
        Consecutive failed ``inspect`` calls after which the unit is
        given up on.
    """

    def __init__(
        self,
        containers: ContainerManager,
        poll_interval: float = 10.0,
        max_wait: float | None = None,
        max_poll_errors: int = DEFAULT_MAX_POLL_ERRORS,
    ) -> None:
        self.containers = containers
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.max_poll_errors = max(1, max_poll_errors)

    async def wait(self, handle: ExecutionHandle) -> int:
        """Block until *handle* is ``exited``/``dead`` and return its exit code.

        A unit that disappears before terminating counts as a failure
        (exit code 1). A unit whose state cannot be read
        ``max_poll_errors`` times in a row is stopped and reported as 125.
        When ``max_wait`` elapses the unit is stopped and 124 is returned.
        """
        started = time.monotonic()
        poll_errors = 0
        while True:
            try:
                state = await asyncio.to_thread(self.containers.inspect_state, handle.container_name)
            except RalphError as e:
                poll_errors += 1
                logger.warning(
                    "unit.inspect_failed",
                    sub_spec=handle.sub_spec,
                    container=handle.container_name,
                    attempt=poll_errors,
                    error=e.message,
                )
                if poll_errors >= self.max_poll_errors:
                    await self._stop(handle)
                    return EXIT_UNIT_UNOBSERVABLE
                await asyncio.sleep(self.poll_interval)
                continue
            poll_errors = 0

            if state is None:
                logger.warning(
                    "unit.disappeared", sub_spec=handle.sub_spec, container=handle.container_name
                )
                return EXIT_UNIT_MISSING
            if state.is_terminal:
                logger.info(
                    "unit.finished",
                    sub_spec=handle.sub_spec,
                    container=handle.container_name,
                    status=state.status,
                    exit_code=state.exit_code,
                )
                return state.exit_code

            if self.max_wait is not None and time.monotonic() - started >= self.max_wait:
                logger.warning(
                    "unit.wait_timeout",
                    sub_spec=handle.sub_spec,
                    container=handle.container_name,
                    max_wait=self.max_wait,
                )
                await self._stop(handle)
                return EXIT_WAIT_TIMEOUT

            await asyncio.sleep(self.poll_interval)

    async def _stop(self, handle: ExecutionHandle) -> None:
        try:
            await asyncio.to_thread(self.containers.stop_container, handle.container_name)
        except RalphError as e:
            logger.error("unit.stop_failed", container=handle.container_name, error=e.message)

    async def wait_all(self, handles: Sequence[ExecutionHandle]) -> list[UnitResult]:
        """Wait for every handle concurrently. Results come back in completion order."""

        async def _one(handle: ExecutionHandle) -> UnitResult:
            return UnitResult(handle=handle, exit_code=await self.wait(handle))

        tasks = [asyncio.ensure_future(_one(h)) for h in handles]
        results: list[UnitResult] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                results.append(await next_done)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return results


__all__ = [
    "CompletionWaiter",
    "EXIT_UNIT_MISSING",
    "EXIT_UNIT_UNOBSERVABLE",
    "EXIT_WAIT_TIMEOUT",
]
