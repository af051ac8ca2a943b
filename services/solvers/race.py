from typing import Any, Awaitable, Dict, Optional
import asyncio
from loguru import logger

class NoWinner(Exception):
    """Every racer failed before producing a result"""

async def first_completed(racers: Dict[str, Awaitable[Any]], timeout: float) -> Optional[Any]:
    """
    Run the named awaitables concurrently and return the first successful result.

    A racer that raises drops out and the others keep going. Losers are
    cancelled once a winner is found or the timeout passes.

    Returns:
        The winning result, or None if the timeout passed first

    Raises:
        NoWinner: if every racer failed before the timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    tasks = {asyncio.ensure_future(aw): name for name, aw in racers.items()}
    pending = set(tasks)
    errors: Dict[str, BaseException] = {}
    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if task.cancelled():
                    continue
                error = task.exception()
                if error is None:
                    logger.debug(f"Race won by {tasks[task]}")
                    return task.result()
                errors[tasks[task]] = error
                logger.debug(f"Racer {tasks[task]} dropped out: {error}")
        raise NoWinner("; ".join(f"{name}: {error}" for name, error in errors.items()))
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
