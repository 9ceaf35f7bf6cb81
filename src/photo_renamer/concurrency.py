"""
Bounded concurrent mapping for the pipeline stages.

`bounded_map` keeps at most `concurrency` operations in flight and refills the
pool as soon as any one of them finishes, so a single slow download or AI call
never holds back the rest of the page. Results stream back in completion order
tagged with the index of the input that produced them.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import TypeVar

from loguru import logger

I = TypeVar("I")  # noqa: E741
O = TypeVar("O")  # noqa: E741

# Operations abandoned by a closed stream keep running here until they finish.
_detached: set[asyncio.Task[object]] = set()


def _discard(task: asyncio.Task[object]) -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    if (exc := task.exception()) is not None:
        logger.warning("detached_operation_failed", error=str(exc))


async def bounded_map(
    inputs: Sequence[I],
    concurrency: int,
    operation: Callable[[I], Awaitable[O]],
) -> AsyncIterator[tuple[int, O]]:
    """
    Apply an async operation to every input with a fixed concurrency ceiling.

    Args:
        inputs: Ordered inputs; each one is started exactly once
        concurrency: Maximum number of operations in flight (must be positive)
        operation: Coroutine function applied to each input. It should encode its own
            failures in the returned value; an exception is re-raised to the consumer.

    Yields:
        (original_index, result) pairs in completion order.

    Note:
        Closing the stream early (break + aclose, or cancellation of the consumer) stops
        new operations from starting. Operations already in flight are left to finish in
        the background and their results are dropped.

    """
    if concurrency < 1:
        msg = f"concurrency must be positive, got {concurrency}"
        raise ValueError(msg)

    pending: dict[asyncio.Task[O], int] = {}
    next_index = 0

    def _start_next() -> None:
        nonlocal next_index
        index = next_index
        next_index += 1
        task = asyncio.ensure_future(operation(inputs[index]))
        pending[task] = index

    try:
        while next_index < min(concurrency, len(inputs)):
            _start_next()

        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                index = pending.pop(task)
                if next_index < len(inputs):
                    _start_next()
                yield index, task.result()
    finally:
        if pending:
            logger.debug("bounded_map_detaching", in_flight=len(pending))
        for task in pending:
            _detached.add(task)
            task.add_done_callback(_discard)
