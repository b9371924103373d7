import asyncio
import logging
from typing import Iterable, List, Optional

from core.cache.persistent_cache import BasePersistentCache
from core.constants import StorageKey

logger = logging.getLogger(__name__)


class CacheRepository:
    """
    本地缓存仓库
    对本地键值存储的异步封装，负责登出时的批量清理。
    """

    def __init__(self, store: BasePersistentCache):
        self.store = store

    async def get(self, key: str) -> Optional[str]:
        """获取缓存值"""
        return await asyncio.to_thread(self.store.get, key)

    async def set(self, key: str, value: str) -> None:
        """设置缓存值"""
        await asyncio.to_thread(self.store.set, key, value)

    async def delete(self, key: str) -> None:
        """删除缓存值"""
        await asyncio.to_thread(self.store.delete, key)

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self.store.keys)

    async def clear_cache(self, keep_conversation_input: bool = False, keys_to_keep: Iterable[str] = ()) -> List[str]:
        """
        清理本地缓存

        Args:
            keep_conversation_input: 是否保留会话输入框草稿 (会话过期后重新登录仍可恢复)
            keys_to_keep: 需要保留的键

        Returns:
            被删除的键列表
        """
        keep = set(keys_to_keep)
        all_keys = await self.keys()
        if keep_conversation_input:
            keep.update(k for k in all_keys if k.startswith(StorageKey.CONVERSATION_INPUT))

        removed = [k for k in all_keys if k not in keep]
        await asyncio.to_thread(self.store.delete_except, keep)
        logger.info(f"本地缓存已清理: 删除 {len(removed)} 个键, 保留 {len(keep)} 个键")
        return removed
