"""Bridging the async controllers into blocking harness code."""

from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Drive `coro` to completion from synchronous code.

    Without a running loop in this thread the coroutine gets a fresh loop of
    its own. Inside a running loop it is handed to a helper thread, since the
    current loop cannot be re-entered.

    Example:
        pods = run_sync(Kr8sController(Path("/tmp/kubeconfig")).get_pods("t1"))
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()
