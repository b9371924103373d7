"""
单实例协调器 (Single Instance Coordinator)

同一会话只允许一个上下文 (标签页/进程) 处于活动状态：
- register_instance(): 原子写入 InstanceClaim (最后写入者胜出)，读回后判断自己是否权威
- deregister_instance(): 卸载时尽力释放，只删除仍属于自己的声明
- 被更新的声明取代时，回调 on_superseded(SignOutReason.MULTIPLE_TABS)，且只回调一次

声明存储:
- MemoryClaimStore: 同一进程内多个上下文共享同一个对象
- SQLiteClaimStore: 跨进程共享；同一文件上的 store 对象在进程内共享监听者，写入即通知；
  其他进程的写入由 PRAGMA data_version 观察任务发现 (同时也会在下一次 verify() 时发现)
"""
import asyncio
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from core.helpers.metrics import INSTANCE_CLAIMS_TOTAL
from core.ports import Unsubscribe
from core.sign_out import SignOutReason
from models.lifecycle import InstanceClaim

logger = logging.getLogger(__name__)


ClaimListener = Callable[[InstanceClaim], None]

# SQLite 存储: (db 绝对路径, session_key) -> 监听者列表
_SHARED_LISTENERS: Dict[Tuple[str, str], List[ClaimListener]] = {}


class BaseClaimStore:
    """声明存储基类：子类实现 _write/_read/_delete_if，监听者管理在这里"""

    def __init__(self, session_key: str = "default") -> None:
        self.session_key = session_key
        self._listeners: List[ClaimListener] = []

    def subscribe(self, listener: ClaimListener) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, claim: InstanceClaim) -> None:
        for listener in list(self._listeners):
            try:
                listener(claim)
            except Exception as e:
                logger.error(f"Instance claim listener failed: {e}", exc_info=True)

    async def write(self, claim: InstanceClaim) -> bool:
        """只有比现有声明更新时才写入；返回是否写入"""
        written = await self._write(claim)
        if written:
            self._notify(claim)
        return written

    async def read(self) -> Optional[InstanceClaim]:
        return await self._read()

    async def delete_if(self, instance_id: str) -> bool:
        """仅当当前声明属于 instance_id 时删除"""
        return await self._delete_if(instance_id)

    def start_watching(self) -> None:
        """开始观察其他进程的写入；进程内存储写入即通知，无需观察"""

    async def stop_watching(self) -> None:
        pass

    async def _write(self, claim: InstanceClaim) -> bool:
        raise NotImplementedError

    async def _read(self) -> Optional[InstanceClaim]:
        raise NotImplementedError

    async def _delete_if(self, instance_id: str) -> bool:
        raise NotImplementedError


class MemoryClaimStore(BaseClaimStore):
    """进程内声明存储 (单次赋值即原子)"""

    def __init__(self, session_key: str = "default") -> None:
        super().__init__(session_key)
        self._claim: Optional[InstanceClaim] = None
        self._lock = threading.Lock()

    async def _write(self, claim: InstanceClaim) -> bool:
        with self._lock:
            if not claim.is_newer_than(self._claim):
                return False
            self._claim = claim
            return True

    async def _read(self) -> Optional[InstanceClaim]:
        return self._claim

    async def _delete_if(self, instance_id: str) -> bool:
        with self._lock:
            if self._claim is not None and self._claim.instance_id == instance_id:
                self._claim = None
                return True
            return False


class SQLiteClaimStore(BaseClaimStore):
    """跨进程声明存储：单条 UPSERT 语句带时间戳守卫，读者不会看到写了一半的声明"""

    _UPSERT = """
        INSERT INTO instance_claim(session_key, instance_id, claimed_at)
        VALUES (?, ?, ?)
        ON CONFLICT(session_key) DO UPDATE SET
            instance_id = excluded.instance_id,
            claimed_at = excluded.claimed_at
        WHERE excluded.claimed_at > instance_claim.claimed_at
           OR (excluded.claimed_at = instance_claim.claimed_at
               AND excluded.instance_id >= instance_claim.instance_id)
    """

    def __init__(
        self,
        db_path: str | os.PathLike,
        session_key: str = "default",
        watch_interval: float = 1.0,
    ) -> None:
        super().__init__(session_key)
        self._db_path = str(Path(db_path).resolve())
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        # 同一文件同一会话的所有 store 对象共用一组监听者
        self._listeners = _SHARED_LISTENERS.setdefault((self._db_path, session_key), [])
        self._watch_interval = watch_interval
        self._watch_task: Optional[asyncio.Task] = None

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS instance_claim (
                    session_key TEXT PRIMARY KEY,
                    instance_id TEXT NOT NULL,
                    claimed_at INTEGER NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _write_sync(self, claim: InstanceClaim) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute(self._UPSERT, (self.session_key, claim.instance_id, claim.claimed_at))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def _read_sync(self) -> Optional[InstanceClaim]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT instance_id, claimed_at FROM instance_claim WHERE session_key = ?",
                (self.session_key,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return InstanceClaim(instance_id=row[0], claimed_at=row[1])

    def _delete_if_sync(self, instance_id: str) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute(
                "DELETE FROM instance_claim WHERE session_key = ? AND instance_id = ?",
                (self.session_key, instance_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    async def _write(self, claim: InstanceClaim) -> bool:
        return await asyncio.to_thread(self._write_sync, claim)

    async def _read(self) -> Optional[InstanceClaim]:
        return await asyncio.to_thread(self._read_sync)

    async def _delete_if(self, instance_id: str) -> bool:
        return await asyncio.to_thread(self._delete_if_sync, instance_id)

    # === 跨进程观察 ===

    def start_watching(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            return
        # 基线在写入声明之前取得，之后任何提交都会被发现
        conn = sqlite3.connect(self._db_path, timeout=30, check_same_thread=False)
        try:
            baseline = self._data_version(conn)
        except sqlite3.DatabaseError:
            conn.close()
            raise
        self._watch_task = asyncio.create_task(self._watch_loop(conn, baseline), name="instance_claim_watch")

    async def stop_watching(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    def _data_version(conn: sqlite3.Connection) -> int:
        return conn.execute("PRAGMA data_version").fetchone()[0]

    async def _watch_loop(self, conn: sqlite3.Connection, last_version: int) -> None:
        """
        PRAGMA data_version 在其他连接提交后变化 (同一连接内多次读取比较)。
        变化后读取当前声明并通知本进程的监听者；监听者自行忽略自己的声明。
        """
        try:
            while True:
                await asyncio.sleep(self._watch_interval)
                try:
                    version = await asyncio.to_thread(self._data_version, conn)
                    if version == last_version:
                        continue
                    last_version = version
                    claim = await self.read()
                except sqlite3.DatabaseError as e:
                    logger.warning(f"Instance claim watch failed, retrying: {e}")
                    continue
                if claim is not None:
                    self._notify(claim)
        finally:
            conn.close()


class SingleInstanceCoordinator:
    """
    单实例协调器

    使用示例:
        coordinator = SingleInstanceCoordinator(store, on_superseded=handle_extra_instance)
        if not await coordinator.register_instance(instance_id):
            raise AuthError(AuthErrorType.MULTIPLE_TABS)
    """

    def __init__(
        self,
        store: BaseClaimStore,
        on_superseded: Optional[Callable[[SignOutReason], Any]] = None,
        settle_delay: float = 0.0,
    ) -> None:
        self.store = store
        self._on_superseded = on_superseded
        self._settle_delay = settle_delay
        self._claim: Optional[InstanceClaim] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._superseded = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def instance_id(self) -> Optional[str]:
        return self._claim.instance_id if self._claim else None

    @property
    def superseded(self) -> bool:
        return self._superseded

    def set_on_superseded(self, callback: Optional[Callable[[SignOutReason], Any]]) -> None:
        self._on_superseded = callback

    async def register_instance(self, instance_id: str) -> bool:
        """
        注册为当前会话的活动实例

        Returns:
            True 表示本实例已成为权威实例；竞争失败返回 False 而不是抛异常。
            存储本身的错误照常抛出。
        """
        claim = InstanceClaim(instance_id=instance_id)
        self._claim = claim
        self._superseded = False
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_claim_written)
        self.store.start_watching()

        await self.store.write(claim)
        # 读回前让出事件循环，使同一时刻的并发注册都已落盘
        await asyncio.sleep(self._settle_delay)

        authoritative = await self.is_authoritative()
        INSTANCE_CLAIMS_TOTAL.labels(result="won" if authoritative else "lost").inc()
        if authoritative:
            logger.info(f"Registered as active instance '{instance_id}'")
        else:
            logger.warning(f"Instance '{instance_id}' lost the claim race to a newer instance")
            self._mark_superseded()
        return authoritative

    async def deregister_instance(self) -> None:
        """释放本实例的声明 (卸载钩子调用)"""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.store.stop_watching()
        if self._claim is None:
            return
        removed = await self.store.delete_if(self._claim.instance_id)
        logger.info(f"Deregistered instance '{self._claim.instance_id}' (claim removed: {removed})")
        self._claim = None

    async def is_authoritative(self) -> bool:
        if self._claim is None:
            return False
        current = await self.store.read()
        return current is not None and current.instance_id == self._claim.instance_id

    async def verify(self) -> bool:
        """重新读取存储；发现已被取代时触发 on_superseded"""
        if self._superseded:
            return False
        if await self.is_authoritative():
            return True
        self._mark_superseded()
        return False

    def _on_claim_written(self, claim: InstanceClaim) -> None:
        if self._claim is None or claim.instance_id == self._claim.instance_id:
            return
        logger.warning(f"Instance '{self._claim.instance_id}' superseded by '{claim.instance_id}'")
        self._mark_superseded()

    def _mark_superseded(self) -> None:
        if self._superseded:
            return
        self._superseded = True
        INSTANCE_CLAIMS_TOTAL.labels(result="superseded").inc()
        if self._on_superseded is None:
            return
        result = self._on_superseded(SignOutReason.MULTIPLE_TABS)
        if asyncio.iscoroutine(result):
            task = asyncio.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
