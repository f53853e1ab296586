import asyncio
from typing import List

from runtime.lane_queue import LaneQueue, LaneQueueClosed


def test_sync_and_async_callables() -> None:
    async def run_test() -> None:
        queue = LaneQueue()

        async def coroutine_work() -> str:
            return "python"

        assert await queue.submit("shell", lambda: 0) == 0
        assert await queue.submit("python", coroutine_work) == "python"

    asyncio.run(run_test())


def test_python_lane_never_reenters() -> None:
    async def run_test() -> None:
        queue = LaneQueue()
        in_flight = 0
        peak = 0
        trace: List[str] = []

        async def execute(label: str) -> str:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            trace.append(f"start {label}")
            await asyncio.sleep(0.01)
            trace.append(f"end {label}")
            in_flight -= 1
            return label

        results = await asyncio.gather(*(queue.submit("python", lambda label=label: execute(label)) for label in "abc"))

        assert results == ["a", "b", "c"]
        assert trace == ["start a", "end a", "start b", "end b", "start c", "end c"]
        assert peak == 1

    asyncio.run(run_test())


def test_python_and_shell_lanes_interleave() -> None:
    async def run_test() -> None:
        queue = LaneQueue(max_concurrency=2)
        shell_done = asyncio.Event()
        trace: List[str] = []

        async def python_work() -> None:
            trace.append("python waiting")
            await asyncio.wait_for(shell_done.wait(), timeout=1)
            trace.append("python resumed")

        def shell_work() -> None:
            trace.append("shell ran")
            shell_done.set()

        await asyncio.gather(queue.submit("python", python_work), queue.submit("shell", shell_work))

        assert trace == ["python waiting", "shell ran", "python resumed"]

    asyncio.run(run_test())


def test_errors_propagate_to_submitter() -> None:
    async def run_test() -> None:
        queue = LaneQueue()

        def boom() -> None:
            raise RuntimeError("lane failure")

        try:
            await queue.submit("shell", boom)
        except RuntimeError as exc:
            assert str(exc) == "lane failure"
        else:
            raise AssertionError("expected RuntimeError")
        assert await queue.submit("shell", lambda: "still serving") == "still serving"

    asyncio.run(run_test())


def test_close_drains_and_rejects_new_work() -> None:
    async def run_test() -> None:
        queue = LaneQueue()
        finished: List[int] = []

        async def slow(index: int) -> int:
            await asyncio.sleep(0.01)
            finished.append(index)
            return index

        pending = [asyncio.create_task(queue.submit("shell", lambda i=i: slow(i))) for i in range(3)]
        await asyncio.sleep(0)
        await queue.close()

        assert await asyncio.gather(*pending) == [0, 1, 2]
        assert finished == [0, 1, 2]
        assert queue.closed
        try:
            await queue.submit("shell", lambda: 1)
        except LaneQueueClosed:
            pass
        else:
            raise AssertionError("expected LaneQueueClosed")

    asyncio.run(run_test())
