import asyncio
import unittest

from deferpy.core import (
    CompositeFailure,
    Failure,
    cleanup_failures,
    run_with_deferral,
    run_with_deferral_exit,
)


def _failing(tag: str, calls: list):
    def act():
        calls.append(tag)
        raise ValueError(tag)
    return act


class TestRunWithDeferral(unittest.IsolatedAsyncioTestCase):
    async def test_success_runs_cleanups_in_reverse_order(self):
        order: list[str] = []

        async def work(defer):
            defer(lambda: order.append("A"))
            defer(lambda: order.append("B"))
            defer(lambda: order.append("C"))
            return 42

        v = await run_with_deferral(work)
        self.assertEqual(v, 42)
        self.assertEqual(order, ["C", "B", "A"])

    async def test_mixed_failures_are_aggregated_in_order(self):
        calls: list[str] = []

        async def work(defer):
            defer(_failing("a", calls))
            defer(lambda: calls.append("b"))
            defer(_failing("c", calls))
            raise ValueError("main")

        with self.assertRaises(CompositeFailure) as cm:
            await run_with_deferral(work)
        self.assertEqual(calls, ["c", "b", "a"])
        self.assertEqual([str(e) for e in cm.exception.errors], ["main", "c", "a"])

    async def test_no_cleanups_returns_value(self):
        async def work(defer):
            return "x"

        self.assertEqual(await run_with_deferral(work), "x")

    async def test_sync_work_function(self):
        order: list[int] = []

        def work(defer):
            defer(lambda: order.append(1))
            return "sync"

        self.assertEqual(await run_with_deferral(work), "sync")
        self.assertEqual(order, [1])

    async def test_work_failure_alone_is_still_composite(self):
        async def work(defer):
            raise KeyError("only")

        with self.assertRaises(CompositeFailure) as cm:
            await run_with_deferral(work)
        self.assertEqual(len(cm.exception), 1)
        self.assertIsInstance(cm.exception.errors[0], KeyError)

    async def test_single_cleanup_failure_is_composite(self):
        calls: list[str] = []

        async def work(defer):
            defer(_failing("first", calls))
            defer(lambda: calls.append("second"))
            return 1

        with self.assertRaises(CompositeFailure) as cm:
            await run_with_deferral(work)
        self.assertEqual([str(e) for e in cm.exception], ["first"])
        self.assertEqual(calls, ["second", "first"])

    async def test_all_failing(self):
        calls: list[str] = []

        async def work(defer):
            for tag in ("1", "2", "3"):
                defer(_failing(tag, calls))
            raise RuntimeError("work")

        with self.assertRaises(CompositeFailure) as cm:
            await run_with_deferral(work)
        self.assertEqual([str(e) for e in cm.exception.errors], ["work", "3", "2", "1"])
        self.assertEqual(len(calls), 3)

    async def test_suspending_work_settles_before_drain(self):
        events: list[str] = []

        async def work(defer):
            defer(lambda: events.append("cleanup"))
            await asyncio.sleep(0.01)
            events.append("work done")
            return "late"

        self.assertEqual(await run_with_deferral(work), "late")
        self.assertEqual(events, ["work done", "cleanup"])

    async def test_work_returning_pending_future(self):
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        loop.call_later(0.01, fut.set_result, 9)
        events: list[str] = []

        def work(defer):
            defer(lambda: events.append("cleanup"))
            return fut

        self.assertEqual(await run_with_deferral(work), 9)
        self.assertEqual(events, ["cleanup"])

    async def test_late_registration_is_rejected(self):
        captured = {}

        async def work(defer):
            captured["defer"] = defer
            return None

        await run_with_deferral(work)
        from deferpy.scope import ScopeClosed
        with self.assertRaises(ScopeClosed):
            captured["defer"](lambda: None)

    async def test_invocations_do_not_share_state(self):
        async def work(defer):
            order: list[int] = []
            for i in range(3):
                defer(lambda i=i: order.append(i))
            return order

        first = await run_with_deferral(work)
        second = await run_with_deferral(work)
        self.assertEqual(first, [2, 1, 0])
        self.assertEqual(second, [2, 1, 0])

    async def test_cancelled_work_still_drains(self):
        started = asyncio.Event()
        cleaned: list[str] = []

        async def work(defer):
            defer(lambda: cleaned.append("done"))
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(run_with_deferral(work))
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(cleaned, ["done"])

    async def test_cancel_keeps_cleanup_failures_without_logger(self):
        started = asyncio.Event()

        async def work(defer):
            defer(lambda: _raise(ValueError("close failed")))
            started.set()
            await asyncio.sleep(10)

        async def runner():
            try:
                await run_with_deferral(work)
            except asyncio.CancelledError as ex:
                return cleanup_failures(ex)

        task = asyncio.create_task(runner())
        await started.wait()
        task.cancel()
        carried = await task
        self.assertEqual([str(e) for e in carried], ["close failed"])

    async def test_base_exception_from_work_keeps_cleanup_failures(self):
        async def work(defer):
            defer(lambda: _raise(ValueError("close failed")))
            raise Abort()

        with self.assertRaises(Abort) as cm:
            await run_with_deferral(work)
        self.assertIsInstance(cm.exception.__context__, CompositeFailure)
        self.assertEqual([str(e) for e in cleanup_failures(cm.exception)], ["close failed"])

    async def test_base_exception_from_cleanup_keeps_earlier_failures(self):
        calls: list[str] = []

        async def work(defer):
            defer(_failing("a", calls))
            defer(lambda: _raise(Abort()))
            defer(_failing("c", calls))
            raise ValueError("main")

        with self.assertRaises(Abort) as cm:
            await run_with_deferral(work)
        self.assertEqual(calls, ["c", "a"])
        self.assertEqual([str(e) for e in cleanup_failures(cm.exception)], ["main", "c", "a"])

    async def test_base_exception_without_failures_carries_nothing(self):
        async def work(defer):
            defer(lambda: None)
            raise Abort()

        with self.assertRaises(Abort) as cm:
            await run_with_deferral(work)
        self.assertEqual(cleanup_failures(cm.exception), ())


class TestExitAndCause(unittest.IsolatedAsyncioTestCase):
    async def test_exit_success(self):
        async def work(defer):
            return 5

        ex = await run_with_deferral_exit(work)
        self.assertTrue(ex.success)
        self.assertEqual(ex.value, 5)
        self.assertEqual(ex.errors, ())

    async def test_exit_failure_cause_chain(self):
        async def work(defer):
            defer(_failing("cleanup", []))
            raise Failure("main")

        ex = await run_with_deferral_exit(work)
        self.assertFalse(ex.success)
        self.assertEqual(ex.cause.kind, "then")
        leaves = ex.cause.leaves()
        self.assertEqual([c.kind for c in leaves], ["fail", "die"])
        self.assertEqual(leaves[0].error, "main")
        self.assertEqual(str(leaves[1].defect), "cleanup")

    async def test_render_lists_every_failure(self):
        async def work(defer):
            defer(_failing("c", []))
            raise Failure("w")

        with self.assertRaises(CompositeFailure) as cm:
            await run_with_deferral(work)
        text = cm.exception.render()
        self.assertIn("Then:", text)
        self.assertIn("Fail('w')", text)
        self.assertIn("Die(ValueError('c'))", text)

    async def test_get_or_raise_reraises_composite(self):
        async def work(defer):
            raise ValueError("x")

        ex = await run_with_deferral_exit(work)
        with self.assertRaises(CompositeFailure) as cm:
            ex.get_or_raise()
        self.assertEqual([str(e) for e in cm.exception], ["x"])


class Abort(BaseException):
    pass


def _raise(ex):
    raise ex
