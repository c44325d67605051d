from __future__ import annotations
from dataclasses import dataclass
import asyncio
import inspect
from typing import Awaitable, Callable, Generic, TypeVar, Any, Optional, Iterable, Iterator, List, Tuple, Union
from .context import Context
from .logger import ConsoleLogger
from .scope import DeferredExecutionScope, CleanupAction

R = TypeVar("R"); E = TypeVar("E"); A = TypeVar("A"); B = TypeVar("B"); E2 = TypeVar("E2")

Registrar = Callable[[CleanupAction], None]

class Failure(Exception, Generic[E]):
    def __init__(self, error: E, annotations: Optional[list[str]] = None):
        super().__init__(repr(error)); self.error = error; self.annotations = list(annotations or [])

@dataclass(frozen=True)
class Cause(Generic[E]):
    kind: str
    left: Optional["Cause[E]"] = None
    right: Optional["Cause[E]"] = None
    error: Optional[E] = None
    defect: Optional[BaseException] = None
    annotations: list[str] = None

    def render(self, indent: str = "", include_traces: bool = True) -> str:
        def line(s: str) -> str: return indent + s + "\n"
        notes = ""
        if self.annotations:
            for n in self.annotations: notes += line("@ " + n)
        if self.kind == 'fail': return notes + line(f"Fail({self.error!r})")
        if self.kind == 'die':
            s = notes + line(f"Die({self.defect!r})")
            if include_traces and self.defect and self.defect.__traceback__:
                tb = ''.join(__import__('traceback').format_exception(type(self.defect), self.defect, self.defect.__traceback__))
                s += ''.join(indent + '  ' + l for l in tb.splitlines(True))
            return s
        if self.kind == 'interrupt': return notes + line("Interrupt")
        if self.kind == 'then':
            l = self.left.render(indent + "  ", include_traces) if self.left else indent+"  (empty)\n"
            r = self.right.render(indent + "  ", include_traces) if self.right else indent+"  (empty)\n"
            return notes + line("Then:") + l + r
        return notes + line(f"Unknown({self.kind})")

    def leaves(self) -> List["Cause[E]"]:
        """Flatten a ``then`` chain into its failures, left to right."""
        if self.kind == 'then':
            out: List[Cause[E]] = []
            if self.left: out.extend(self.left.leaves())
            if self.right: out.extend(self.right.leaves())
            return out
        return [self]

    @staticmethod
    def fail(e: E) -> "Cause[E]": return Cause(kind='fail', error=e, annotations=[])
    @staticmethod
    def die(ex: BaseException) -> "Cause[E]": return Cause(kind='die', defect=ex, annotations=[])
    @staticmethod
    def interrupt() -> "Cause[E]": return Cause(kind='interrupt', annotations=[])
    @staticmethod
    def then(l: "Cause[E]", r: "Cause[E]") -> "Cause[E]": return Cause(kind='then', left=l, right=r, annotations=[])

def cause_of(ex: BaseException) -> Cause[Any]:
    if isinstance(ex, CompositeFailure): return ex.cause
    if isinstance(ex, Failure):
        return Cause(kind='fail', error=ex.error, annotations=list(ex.annotations))
    return Cause.die(ex)

def sequential_cause(errors: Iterable[BaseException]) -> Optional[Cause[Any]]:
    """Chain failures with ``Then`` in the order they occurred."""
    c: Optional[Cause[Any]] = None
    for ex in errors:
        c = cause_of(ex) if c is None else Cause.then(c, cause_of(ex))
    return c

class CompositeFailure(Exception):
    """Every failure of one deferral invocation, in order.

    The work unit's exception (if any) comes first, followed by the
    exceptions of the cleanup actions in the order they ran. The shape is
    the same for one failure as for many.

    Example:
        ```python
        try:
            await run_with_deferral(work)
        except CompositeFailure as cf:
            for ex in cf.errors:
                print(type(ex).__name__, ex)
        ```
    """
    def __init__(self, errors: Iterable[BaseException]):
        self.errors: Tuple[BaseException, ...] = tuple(errors)
        super().__init__("; ".join(repr(e) for e in self.errors))

    def __iter__(self) -> Iterator[BaseException]: return iter(self.errors)
    def __len__(self) -> int: return len(self.errors)

    @property
    def cause(self) -> Cause[Any]:
        return sequential_cause(self.errors)  # type: ignore[return-value]

    def render(self, include_traces: bool = False) -> str:
        return self.cause.render(include_traces=include_traces)

@dataclass
class Exit(Generic[E, A]):
    success: bool
    value: Optional[A] = None
    cause: Optional[Cause[E]] = None
    errors: Tuple[BaseException, ...] = ()

    @staticmethod
    def succeed(value: A) -> "Exit[Any, A]": return Exit(success=True, value=value)

    @staticmethod
    def failed(ex: BaseException) -> "Exit[Any, Any]":
        errors = ex.errors if isinstance(ex, CompositeFailure) else (ex,)
        return Exit(success=False, cause=cause_of(ex), errors=errors)

    # Failures collected before the interruption come first in the chain
    @staticmethod
    def interrupted(errors: Iterable[BaseException] = ()) -> "Exit[Any, Any]":
        errors = tuple(errors)
        c: Cause[Any] = Cause.interrupt()
        if errors: c = Cause.then(sequential_cause(errors), c)  # type: ignore[arg-type]
        return Exit(success=False, cause=c, errors=errors)

    @property
    def is_interrupted(self) -> bool:
        return self.cause is not None and any(c.kind == 'interrupt' for c in self.cause.leaves())

    def get_or_raise(self) -> A:
        if self.success: return self.value  # type: ignore[return-value]
        if self.is_interrupted:
            ex = asyncio.CancelledError()
            try:
                raise ex
            finally:
                if self.errors: ex.__context__ = CompositeFailure(self.errors)
        raise CompositeFailure(self.errors)

def cleanup_failures(ex: BaseException) -> Tuple[BaseException, ...]:
    """Failures carried by an interruption that escaped a deferral invocation."""
    ctx = ex.__context__
    return ctx.errors if isinstance(ctx, CompositeFailure) else ()

async def run_with_deferral_exit(work: Callable[[Registrar], Union[Awaitable[A], A]], logger: Optional[ConsoleLogger] = None) -> Exit[Any, A]:
    """Run ``work`` with a fresh scope and settle it into an :class:`Exit`.

    ``work`` receives the scope's registrar. Once it settles, every
    registered cleanup action runs newest first. A successful Exit is only
    produced when neither the work nor any cleanup action failed.

    A ``BaseException`` that is not an ``Exception`` (cancellation,
    ``KeyboardInterrupt``), whether from the work or arriving during the
    drain, never cuts the drain short. It is re-raised afterwards with every
    collected failure attached as a :class:`CompositeFailure` in its
    ``__context__`` (see :func:`cleanup_failures`).
    """
    scope = DeferredExecutionScope(logger)
    failures: List[BaseException] = []
    interrupt: Optional[BaseException] = None
    value: Optional[A] = None
    try:
        res = work(scope.registrar)
        if inspect.isawaitable(res):
            res = await res
        value = res  # type: ignore[assignment]
    except Exception as ex:
        failures.append(ex)
    except BaseException as ex:
        interrupt = ex
    try:
        await scope.drain()
    except BaseException as ex:
        failures.extend(scope.failures)
        if interrupt is None: interrupt = ex
        elif type(ex) is not type(interrupt): failures.append(ex)
    else:
        failures.extend(scope.failures)
    if interrupt is not None:
        if not failures:
            raise interrupt
        composite = CompositeFailure(failures)
        if logger:
            await logger.error(f"cleanup failures during {type(interrupt).__name__}", failures=[repr(e) for e in failures])
        try:
            raise interrupt
        finally:
            # raise may overwrite __context__ with an exception the caller is handling
            interrupt.__context__ = composite
    if not failures:
        return Exit.succeed(value)
    return Exit.failed(CompositeFailure(failures))

async def run_with_deferral(work: Callable[[Registrar], Union[Awaitable[A], A]], logger: Optional[ConsoleLogger] = None) -> A:
    """Run ``work`` with a registrar for cleanup actions; drain them LIFO.

    Returns the work's value when nothing failed.

    Raises:
        CompositeFailure: carrying the work's exception (if any) followed by
            each failing cleanup action's exception in execution order.

    Example:
        ```python
        async def work(defer):
            conn = await connect()
            defer(conn.close)
            return await conn.query("select 1")

        value = await run_with_deferral(work)
        ```
    """
    exit_ = await run_with_deferral_exit(work, logger)
    return exit_.get_or_raise()

class Effect(Generic[R, E, A]):
    def __init__(self, run: Callable[[Context], Awaitable[A]]): self._run_impl = run
    async def _run(self, ctx: "Context") -> A: return await self._run_impl(ctx)

    def map(self, f: Callable[[A], B]) -> "Effect[R, E, B]":
        async def run(ctx: Context): return f(await self._run(ctx))
        return Effect(run)

    def flat_map(self, f: Callable[[A], "Effect[R, E, B]"]) -> "Effect[R, E, B]":
        async def run(ctx: Context): a = await self._run(ctx); return await f(a)._run(ctx)
        return Effect(run)

    def catch_all(self, f: Callable[[E], "Effect[R, E2, A]"]) -> "Effect[R, E2, A]":
        async def run(ctx: Context):
            try: return await self._run(ctx)
            except Failure as fe: return await f(fe.error)._run(ctx)
        return Effect(run)

    # Recover from a CompositeFailure raised by a deferring() effect. catch_all never
    # fires there: a Failure from the effect is always wrapped, even when alone.
    def catch_composite(self, f: Callable[[CompositeFailure], "Effect[R, E2, A]"]) -> "Effect[R, E2, A]":
        async def run(ctx: Context):
            try: return await self._run(ctx)
            except CompositeFailure as cf: return await f(cf)._run(ctx)
        return Effect(run)

def succeed(a: A) -> Effect[Any, Any, A]:
    async def run(_: Context): return a
    return Effect(run)

def fail(e: E) -> Effect[Any, E, Any]:
    async def run(_: Context): raise Failure(e)
    return Effect(run)

def from_async(thunk: Callable[[], Awaitable[A]]) -> Effect[Any, Any, A]:
    async def run(_: Context): return await thunk()
    return Effect(run)

def sync(thunk: Callable[[], A]) -> Effect[Any, Any, A]:
    async def run(_: Context): return thunk()
    return Effect(run)

# Run an effect built with a registrar, draining its cleanup actions afterwards
def deferring(f: Callable[[Registrar], Effect[Any, E, A]]) -> Effect[Any, E, A]:
    async def run(ctx: Context):
        async def work(register: Registrar):
            eff = f(register)
            if asyncio.iscoroutine(eff):  # support async factory returning Effect
                eff = await eff  # type: ignore[assignment]
            return await eff._run(ctx)
        return await run_with_deferral(work, ctx.get_optional(ConsoleLogger))
    return Effect(run)
