"""
AnyIO runtime: fork independent deferral invocations in a task group.

Run: python examples/anyio_runtime_example.py
"""
import anyio

from deferpy import AnyIORuntime, Context, ConsoleLogger


def job(tag: str, delay: float):
    async def work(defer):
        defer(lambda: print(f"[{tag}] cleanup 1"))
        defer(lambda: print(f"[{tag}] cleanup 2"))
        await anyio.sleep(delay)
        return tag
    return work


async def main():
    base = Context().add(ConsoleLogger, ConsoleLogger(level="DEBUG"))
    async with AnyIORuntime(base) as rt:
        f1 = await rt.fork(job("inc", 0.02))
        f2 = await rt.fork(job("mul", 0.03))
        e1, e2 = await f1.await_(), await f2.await_()
        print("AnyIO exits =>", e1.value, e2.value)


if __name__ == "__main__":
    anyio.run(main)
