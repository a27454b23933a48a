"""Run blocking file and image work off the event loop."""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable


async def run_sync(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Execute blocking code in the default executor and await the result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


__all__ = ["run_sync"]
