from __future__ import annotations
from typing import Optional, TypeVar, Generic, Any, Callable
import anyio
import anyio.abc
from .context import Context
from .core import Exit, Effect, cleanup_failures, run_with_deferral
from .logger import ConsoleLogger
from .runtime import Work

E = TypeVar('E'); A = TypeVar('A')

class AnyIOFiber(Generic[E, A]):
    def __init__(self, done_event: anyio.Event, get_result: Callable[[], tuple[bool, Any, Any]], cancel_scope: anyio.CancelScope):
        self._done = done_event; self._get_result = get_result; self._scope = cancel_scope
    async def await_(self) -> Exit[E, A]:
        await self._done.wait()
        ok, value, err = self._get_result()
        if ok: return Exit.succeed(value)
        if isinstance(err, anyio.get_cancelled_exc_class()): return Exit.interrupted(cleanup_failures(err))
        return Exit.failed(err)
    async def join(self) -> A:
        return (await self.await_()).get_or_raise()
    def interrupt(self) -> None: self._scope.cancel()

class AnyIORuntime:
    """Runs deferral invocations inside an anyio task group.

    Use as an async context manager; the task group waits for every forked
    invocation (including its drain) on exit.
    """
    def __init__(self, base: Optional[Context] = None): self.base = base or Context(); self._tg: Optional[anyio.abc.TaskGroup] = None
    async def __aenter__(self) -> 'AnyIORuntime': self._tg = await anyio.create_task_group().__aenter__(); return self
    async def __aexit__(self, et, e, tb): assert self._tg is not None; await self._tg.__aexit__(et, e, tb); self._tg=None
    @property
    def logger(self) -> Optional[ConsoleLogger]: return self.base.get_optional(ConsoleLogger)
    async def run(self, work: Work[A]) -> A:
        return await run_with_deferral(work, self.logger)
    async def run_effect(self, eff: Effect[Any, E, A]) -> A:
        return await eff._run(self.base)
    async def fork(self, work: Work[A]) -> AnyIOFiber[Any, A]:
        if self._tg is None: raise RuntimeError("Use AnyIORuntime in 'async with' context")
        done = anyio.Event(); result: dict[str, Any] = {}
        async def worker(task_status=anyio.TASK_STATUS_IGNORED):
            with anyio.CancelScope() as scope:
                task_status.started(scope)
                try: v = await self.run(work); result.update(ok=True, value=v, err=None)
                except BaseException as ex: result.update(ok=False, value=None, err=ex)
                finally: done.set()
        scope = await self._tg.start(worker)  # type: ignore
        def _get(): return (bool(result.get('ok', False)), result.get('value'), result.get('err'))
        return AnyIOFiber(done, _get, scope)
