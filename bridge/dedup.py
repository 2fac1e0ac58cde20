"""
消息去重缓存 - 防止平台重投递的消息被重复处理
"""
import asyncio
import time
from typing import Callable, Dict, Optional

from loguru import logger


class DedupCache:
    """最近见过的消息ID集合, 条目超过 TTL 后由定期清扫移除"""

    def __init__(
        self,
        ttl: float = 600.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._seen)

    async def contains(self, message_id: str) -> bool:
        async with self._lock:
            return message_id in self._seen

    async def add(self, message_id: str) -> None:
        async with self._lock:
            self._seen[message_id] = self._clock()

    async def check_and_add(self, message_id: str) -> bool:
        """记录消息ID; 返回它此前是否已经出现过"""
        async with self._lock:
            if message_id in self._seen:
                return True
            self._seen[message_id] = self._clock()
            return False

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [mid for mid, seen_at in self._seen.items() if now - seen_at > self.ttl]
            for mid in expired:
                del self._seen[mid]
        if expired:
            logger.debug(f"[Dedup] purged {len(expired)} expired message ids")
        return len(expired)

    @property
    def is_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start(self) -> None:
        """启动后台清扫任务 (需在事件循环内调用)"""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.purge_expired()
