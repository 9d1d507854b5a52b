import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_single_arg(
    func: Callable[[Any], Any],
    items: Iterable[Any],
    max_concurrency: int = 5,
    *,
    return_exceptions: bool = False,
) -> List[Any]:
    """
    Run a blocking single-argument function over items on worker threads,
    bounded by max_concurrency. Results keep the input order.
    """
    sem = asyncio.Semaphore(max_concurrency)

    async def _run_one(item: Any) -> Any:
        async with sem:
            return await asyncio.to_thread(func, item)

    tasks = [asyncio.create_task(_run_one(item)) for item in items]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    size = max(1, int(size))
    return [items[i : i + size] for i in range(0, len(items), size)]


async def process_in_groups(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    group_size: int,
    pause_seconds: float = 0.0,
    should_stop: Optional[Callable[[], bool]] = None,
    on_group_done: Optional[Callable[[int, int], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> List[R]:
    """
    Await ``worker`` for every item, ``group_size`` at a time, pausing between
    groups. ``should_stop`` is checked before each group; when it returns True
    the remaining items are skipped and only the processed prefix is returned.
    """
    results: List[R] = []
    groups = chunked(items, group_size)
    for index, group in enumerate(groups):
        if should_stop is not None and should_stop():
            break
        results.extend(await asyncio.gather(*(worker(item) for item in group)))
        if on_group_done is not None:
            on_group_done(len(results), len(items))
        if pause_seconds > 0 and index < len(groups) - 1:
            await sleep(pause_seconds)
    return results
