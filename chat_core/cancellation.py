"""取消信号与超时控制。

调用方可以传入自己的 AbortSignal；若未传入但配置了超时，
客户端会自建一个内部信号并在计时器到期时触发它。
超时抛 ChatTimeoutError，主动取消抛 AbortedError，两者可区分。
"""

import asyncio
import contextlib
from typing import Awaitable, Optional, TypeVar

from chat_core.domain.exceptions import AbortedError, ChatTimeoutError

T = TypeVar("T")


class AbortSignal:
    """基于 asyncio.Event 的取消信号。"""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def run_with_timeout(
    coro: Awaitable[T],
    timeout_ms: Optional[int] = None,
    signal: Optional[AbortSignal] = None,
    timeout_message: str = "timed out waiting for response",
) -> T:
    """在超时计时器和取消信号之间赛跑执行 coro。

    超时或取消时通过 task.cancel() 中止请求，请求内部的 async with / finally
    负责释放流资源。内部信号不会传给传输层，只作为标记随 ChatTimeoutError
    的 extra["signal"] 返回，表明是计时器而非调用方触发了中止。
    """

    internal_signal: Optional[AbortSignal] = None
    if timeout_ms and signal is None:
        internal_signal = AbortSignal()

    task = asyncio.ensure_future(coro)
    waiters = {task}
    abort_waiter = None
    if signal is not None:
        if signal.aborted:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise AbortedError(code="ABORTED", message=signal.reason or "aborted")
        abort_waiter = asyncio.ensure_future(signal.wait())
        waiters.add(abort_waiter)

    timeout = timeout_ms / 1000 if timeout_ms else None
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if abort_waiter is not None:
            abort_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    if abort_waiter is not None and abort_waiter in done:
        raise AbortedError(code="ABORTED", message=signal.reason or "aborted")

    if internal_signal is not None:
        internal_signal.abort("timeout")
    raise ChatTimeoutError(
        code="TIMEOUT",
        message=timeout_message,
        http_status=408,
        signal=internal_signal,
    )
