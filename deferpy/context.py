from __future__ import annotations
from typing import Any, Dict, Optional, TypeVar

A = TypeVar("A")

class Context:
    """Immutable service container keyed by type.

    Effects and runtimes read optional services (such as a
    :class:`~deferpy.logger.ConsoleLogger`) from the context they run in.

    Example:
        ```python
        ctx = Context().with_service(ConsoleLogger, ConsoleLogger(level="DEBUG"))
        logger = ctx.get(ConsoleLogger)
        ```
    """
    def __init__(self, values: Dict[type, Any] | None = None): self._values = dict(values or {})
    def get(self, t: type[A]) -> A:
        """Get a service by type.

        Raises:
            KeyError: If the service type is not available
        """
        if t not in self._values: raise KeyError(f"Missing service: {t}")
        return self._values[t]
    def get_optional(self, t: type[A]) -> Optional[A]:
        return self._values.get(t)
    def add(self, t: type[A], v: A) -> "Context":
        """Return a new Context with ``v`` stored under ``t``; this one is unchanged."""
        c = dict(self._values); c[t] = v; return Context(c)

    def with_service(self, t: type[A], v: A) -> "Context":
        return self.add(t, v)
