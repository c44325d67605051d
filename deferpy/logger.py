from __future__ import annotations
import sys, datetime as _dt, json
from typing import Optional, Dict, Any


_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


class ConsoleLogger:
    """Structured stderr logger.

    Writes one line per record, either as text or as compact JSON. Fields
    given to :meth:`bind` are attached to every record of the returned
    logger; per-call fields are merged on top.

    Example:
        ```python
        log = ConsoleLogger(level="DEBUG", json_output=True)
        await log.info("drain start", pending=3)
        ```
    """
    def __init__(self, name: str = "deferpy", level: str = "INFO", json_output: bool = False, context: Optional[Dict[str, Any]] = None):
        self.name = name
        self.level = _LEVELS.get(level.upper(), 20)
        self.json_output = json_output
        self.context = dict(context or {})

    def set_level(self, level: str) -> None:
        self.level = _LEVELS.get(level.upper(), self.level)

    def bind(self, **fields: Any) -> "ConsoleLogger":
        ctx = dict(self.context); ctx.update(fields)
        return ConsoleLogger(self.name, level=self.level_name, json_output=self.json_output, context=ctx)

    @property
    def level_name(self) -> str:
        for k, v in _LEVELS.items():
            if v == self.level: return k
        return "INFO"

    def enabled(self, level: str) -> bool:
        return _LEVELS[level] >= self.level

    async def _log(self, level: str, msg: str, **fields: Any) -> None:
        if not self.enabled(level):
            return
        ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
        all_fields: Dict[str, Any] = {}
        all_fields.update(self.context)
        all_fields.update(fields)
        if self.json_output:
            data: Dict[str, Any] = {"ts": ts, "name": self.name, "level": level, "msg": msg}
            if all_fields:
                data["fields"] = all_fields
            print(json.dumps(data, separators=(",", ":"), default=repr), file=sys.stderr)
        else:
            extras = "".join([f" {k}={v}" for k, v in sorted(all_fields.items())])
            print(f"[{ts}] {self.name} {level}: {msg}{extras}", file=sys.stderr)

    async def debug(self, msg: str, **fields: Any) -> None: await self._log("DEBUG", msg, **fields)
    async def info(self, msg: str, **fields: Any) -> None: await self._log("INFO", msg, **fields)
    async def warn(self, msg: str, **fields: Any) -> None: await self._log("WARN", msg, **fields)
    async def error(self, msg: str, **fields: Any) -> None: await self._log("ERROR", msg, **fields)
