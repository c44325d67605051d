from .core import (
    Effect,
    Failure,
    Cause,
    Exit,
    CompositeFailure,
    Registrar,
    cause_of,
    cleanup_failures,
    sequential_cause,
    run_with_deferral,
    run_with_deferral_exit,
    deferring,
    succeed,
    fail,
    from_async,
    sync,
)
from .scope import DeferredExecutionScope, ScopeClosed, CleanupAction, OPEN, DRAINING, CLOSED
from .context import Context
from .runtime import Runtime, Fiber
from .anyio_runtime import AnyIORuntime, AnyIOFiber
from .logger import ConsoleLogger
