from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar, Any, Generic, Union
import uuid
from .context import Context
from .core import Exit, Effect, Registrar, cleanup_failures, run_with_deferral, run_with_deferral_exit
from .logger import ConsoleLogger

E = TypeVar("E"); A = TypeVar("A")

Work = Callable[[Registrar], Union[Awaitable[A], A]]

class Fiber(Generic[E, A]):
    """A forked deferral invocation running as an asyncio task.

    Each fiber owns its own scope; fibers share no cleanup state.

    Attributes:
        id: Unique identifier for this fiber
        name: Optional name for debugging
        status: Current status ('running', 'done', 'failed', 'cancelled')
    """
    def __init__(self, task: asyncio.Task, name: Optional[str] = None):
        self._task = task
        self.id: str = uuid.uuid4().hex
        self.name: Optional[str] = name
        self._status: str = "running"
        task.add_done_callback(self._on_done)

    @property
    def status(self) -> str:
        return self._status

    def _on_done(self, t: asyncio.Task) -> None:
        if t.cancelled(): self._status = "cancelled"
        elif t.exception() is not None: self._status = "failed"
        else:
            exit_: Exit[E, A] = t.result()
            if exit_.success: self._status = "done"
            elif exit_.is_interrupted: self._status = "cancelled"
            else: self._status = "failed"

    async def await_(self) -> Exit[E, A]:
        """Wait for the invocation to settle and return its outcome.

        An interrupted invocation still reports the failures collected
        before and during its drain in ``Exit.errors``.

        Example:
            ```python
            fiber = runtime.fork(work)
            exit_ = await fiber.await_()
            if not exit_.success:
                print(exit_.cause.render())
            ```
        """
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            # cancelled before the invocation started
            if self._task.cancelled(): return Exit.interrupted()
            raise

    async def join(self) -> A:
        """Wait for the invocation and return its value.

        Raises:
            CompositeFailure: If the work or any cleanup action failed
            asyncio.CancelledError: If the fiber was interrupted
        """
        return (await self.await_()).get_or_raise()

    def interrupt(self) -> None:
        """Cancel the work. Registered cleanup actions still run to completion."""
        self._task.cancel()

class Runtime:
    """Runs deferral invocations against a base Context.

    A :class:`~deferpy.logger.ConsoleLogger` in the base context is handed to
    every invocation's scope.

    Example:
        ```python
        runtime = Runtime(Context().add(ConsoleLogger, ConsoleLogger(level="DEBUG")))

        f1 = runtime.fork(load_users)
        f2 = runtime.fork(load_orders)
        users, orders = await f1.join(), await f2.join()
        ```
    """
    def __init__(self, base: Optional[Context] = None):
        self.base = base or Context()

    @property
    def logger(self) -> Optional[ConsoleLogger]:
        return self.base.get_optional(ConsoleLogger)

    def fork(self, work: Work[A], name: Optional[str] = None) -> Fiber[Any, A]:
        """Start ``work`` in the background under its own scope."""
        task = asyncio.create_task(self._settle(work), name=name)
        return Fiber(task, name=name)

    async def _settle(self, work: Work[A]) -> Exit[Any, A]:
        try:
            return await run_with_deferral_exit(work, self.logger)
        except asyncio.CancelledError as ex:
            return Exit.interrupted(cleanup_failures(ex))

    async def run(self, work: Work[A]) -> A:
        return await run_with_deferral(work, self.logger)

    async def run_effect(self, eff: Effect[Any, E, A]) -> A:
        return await eff._run(self.base)
