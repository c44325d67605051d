"""
Deferred cleanup: register cleanups while working, drain them newest first.

Run: python examples/basic_deferral.py
"""
import asyncio

from deferpy import CompositeFailure, ConsoleLogger, run_with_deferral


class Connection:
    def __init__(self, name: str):
        self.name = name
        print(f"[conn] open {name}")

    async def query(self, x: int) -> int:
        await asyncio.sleep(0.01)
        return x * 3

    async def close(self) -> None:
        await asyncio.sleep(0.01)
        print(f"[conn] close {self.name}")


async def main():
    logger = ConsoleLogger(level="DEBUG")

    async def work(defer):
        primary = Connection("primary")
        defer(primary.close)
        replica = Connection("replica")
        defer(replica.close)
        return await primary.query(7)

    print("query =>", await run_with_deferral(work, logger))  # 21, replica closed before primary

    async def broken(defer):
        defer(lambda: print("[cleanup] still runs"))
        raise ValueError("query failed")

    try:
        await run_with_deferral(broken, logger)
    except CompositeFailure as cf:
        print(cf.render())


if __name__ == "__main__":
    asyncio.run(main())
