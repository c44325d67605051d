from __future__ import annotations
import asyncio
import inspect
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Union

import anyio

from .logger import ConsoleLogger

CleanupAction = Callable[[], Union[Awaitable[Any], Any]]

OPEN = "open"
DRAINING = "draining"
CLOSED = "closed"


class ScopeClosed(RuntimeError):
    pass


class DeferredExecutionScope:
    """Ordered set of cleanup actions owned by a single invocation.

    Actions are registered while the scope is ``open`` and executed exactly
    once, newest first, when the scope drains. Each action settles (returns,
    raises, or finishes awaiting) before the next one starts. A failing
    action never stops the drain; its exception is collected instead.

    Phases move strictly forward: ``open`` -> ``draining`` -> ``closed``.

    Example:
        ```python
        scope = DeferredExecutionScope()
        scope.register(db.close)
        scope.register(cache.disconnect)

        failures = await scope.drain()  # cache.disconnect, then db.close
        ```
    """
    def __init__(self, logger: Optional[ConsoleLogger] = None):
        self.id: str = uuid.uuid4().hex
        self._actions: List[CleanupAction] = []
        self._phase = OPEN
        self._interrupt: Optional[BaseException] = None
        self.failures: List[Exception] = []
        self._logger = logger.bind(scope=self.id) if logger is not None else None

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def registrar(self) -> Callable[[CleanupAction], None]:
        return self.register

    def __len__(self) -> int:
        return len(self._actions)

    def register(self, action: CleanupAction) -> None:
        """Append a cleanup action to run when the scope drains.

        The action takes no arguments; it may return an awaitable, which is
        awaited before the next action starts.

        Raises:
            ScopeClosed: if the scope has left the ``open`` phase. Late
                registrations are never recorded.
        """
        if self._phase != OPEN:
            raise ScopeClosed(f"register on {self._phase} scope")
        self._actions.append(action)

    async def _settle(self, res: Awaitable[Any]) -> None:
        # Under asyncio a task.cancel() bypasses anyio shields; run the action
        # as its own task and keep waiting on it until it settles.
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            await res
            return
        fut = asyncio.ensure_future(res)
        while not fut.done():
            try:
                await asyncio.shield(fut)
            except asyncio.CancelledError as ex:
                if not fut.done() and self._interrupt is None:
                    self._interrupt = ex
        fut.result()

    async def drain(self) -> List[Exception]:
        """Run every registered action in reverse registration order.

        Returns the exceptions raised by the actions, in execution order; they
        are also kept on ``scope.failures``. Every action runs to completion
        once started: the drain is shielded from anyio cancellation, and an
        asyncio cancellation arriving mid-drain is held back until the last
        action has settled, then re-raised. A non-``Exception`` error (e.g.
        ``KeyboardInterrupt``) from an action is likewise re-raised once the
        remaining actions have run. In both cases ``scope.failures`` still
        holds every collected failure.

        Raises:
            ScopeClosed: if the scope was already drained.
        """
        if self._phase != OPEN:
            raise ScopeClosed(f"drain on {self._phase} scope")
        self._phase = DRAINING
        failures = self.failures
        fatal: Optional[BaseException] = None
        log = self._logger
        with anyio.CancelScope(shield=True):
            if log: await log.debug("drain start", pending=len(self._actions))
            while self._actions:
                action = self._actions.pop()
                try:
                    res = action()
                    if inspect.isawaitable(res):
                        await self._settle(res)
                except Exception as ex:
                    failures.append(ex)
                    if log: await log.warn(f"cleanup failed: {ex!r}", remaining=len(self._actions))
                except BaseException as ex:
                    if fatal is None: fatal = ex
            self._phase = CLOSED
            if log: await log.debug("drain end", failures=len(failures))
        if fatal is None and self._interrupt is not None:
            fatal = self._interrupt
        if fatal is not None:
            raise fatal
        return list(failures)
