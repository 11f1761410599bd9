import asyncio
from typing import Optional

from ..exceptions import OperationCancelled


async def pause(interval: float, cancel_event: Optional[asyncio.Event] = None) -> None:
    """
    Sleep between two polls.

    Returns after `interval` seconds, or raises OperationCancelled as soon as
    `cancel_event` is set.
    """
    if cancel_event is None:
        await asyncio.sleep(interval)
        return

    if cancel_event.is_set():
        raise OperationCancelled("Operation cancelled")

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=interval)
    except asyncio.TimeoutError:
        return

    raise OperationCancelled("Operation cancelled")
