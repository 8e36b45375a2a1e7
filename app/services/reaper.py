"""
app.services.reaper
~~~~~~~~~~~~~~~~~~~

房间回收器：后台定时任务，周期性清理注册表中的过期房间。

每轮扫描两遍：
  1. 无人时长超过 ``persistence_timeout`` 的房间（常规回收）
  2. 创建时长超过 ``max_age`` 的房间（兜底，``max_age <= 0`` 时跳过）

两遍都是幂等的，与消息处理共享同一个事件循环。
超龄房间里可能还有人在线，回收后交给 ``on_expired`` 回调通知成员。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from app.core.logging import get_logger
from app.services.registry import RoomRegistry
from app.services.room import Room

logger = get_logger(__name__)


class RoomReaper:
    """房间回收器。

    Attributes:
        registry: 注入的房间注册表。
        interval: 扫描间隔（秒）。
        persistence_timeout: 无人房间保留时长（秒）。
        max_age: 房间绝对最大存活时长（秒）。
        on_expired: 超龄房间被回收后调用，用于通知仍在线的成员。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        interval: float,
        persistence_timeout: float,
        max_age: float = 0,
        on_expired: Callable[[Room], Awaitable[None]] | None = None,
    ) -> None:
        self.registry = registry
        self.interval = interval
        self.persistence_timeout = persistence_timeout
        self.max_age = max_age
        self.on_expired = on_expired
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> tuple[int, int]:
        """执行一轮回收，返回 ``(无人房间回收数, 超龄房间回收数)``。"""
        abandoned = self.registry.cleanup_old_rooms(self.persistence_timeout)
        expired = self.registry.cleanup_expired_rooms(self.max_age) if self.max_age > 0 else []
        if self.on_expired is not None:
            for room in expired:
                try:
                    await self.on_expired(room)
                except Exception as e:
                    logger.warning("超龄房间关闭通知失败 | room=%s | %s", room.room_code, e)
        if abandoned or expired:
            logger.info(
                "房间回收完成 | 无人: %d | 超龄: %d | 剩余: %d",
                abandoned, len(expired), self.registry.room_count,
            )
        return abandoned, len(expired)

    def start(self) -> None:
        """启动后台任务。必须在事件循环内调用，重复调用无副作用。"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="room-reaper")
        logger.info(
            "房间回收器已启动 | 间隔: %ss | 保留: %ss | 最大存活: %ss",
            self.interval, self.persistence_timeout, self.max_age,
        )

    async def stop(self) -> None:
        """取消后台任务并等待其退出。"""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("房间回收器已停止")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep()
