"""本地持久化键值存储：浏览器 localStorage 的等价物，支持 SQLite 文件或内存后端。

用法：
    store = SQLitePersistentCache("db/local_store.db")
    store.set("key", "value")
    val = store.get("key")
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class BasePersistentCache:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def delete_except(self, keep: Iterable[str]) -> int:
        """删除除 keep 之外的所有键，返回删除数量"""
        keep_set = set(keep)
        removed = 0
        for key in self.keys():
            if key not in keep_set:
                self.delete(key)
                removed += 1
        return removed


class MemoryPersistentCache(BasePersistentCache):
    """进程内后端 (测试 / 无盘环境)"""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class SQLitePersistentCache(BasePersistentCache):
    def __init__(self, db_path: str | os.PathLike) -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._ensure_schema()
        except sqlite3.DatabaseError:
            if not self._handle_corruption():
                raise

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        try:
            cur = conn.cursor()
            cur.execute("PRAGMA busy_timeout=30000")
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            conn.close()
            if self._handle_corruption():
                return sqlite3.connect(self._db_path, timeout=30)
            raise
        return conn

    def _handle_corruption(self) -> bool:
        """Handle database corruption by deleting the file."""
        try:
            logger.error(f"❌ SQLite Store Corruption Detected: {self._db_path}")
            if os.path.exists(self._db_path):
                os.remove(self._db_path)
                logger.warning(f"🧹 Corrupted store file deleted: {self._db_path}")
            for ext in ["-shm", "-wal"]:
                p = f"{self._db_path}{ext}"
                if os.path.exists(p):
                    os.remove(p)
            self._ensure_schema()
            logger.info("✅ Local store re-initialized successfully.")
            return True
        except Exception as e:
            logger.critical(f"☠️ Failed to recover from store corruption: {e}")
            return False

    def _ensure_schema(self) -> None:
        conn = sqlite3.connect(self._db_path, timeout=30)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = self._conn()
        try:
            conn.execute("REPLACE INTO kv_store(key, value) VALUES (?, ?)", (key, value))
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self._conn()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self) -> List[str]:
        conn = self._conn()
        try:
            return [row[0] for row in conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()]
        finally:
            conn.close()

    def delete_except(self, keep: Iterable[str]) -> int:
        keep_list = sorted(set(keep))
        conn = self._conn()
        try:
            cur = conn.cursor()
            if keep_list:
                placeholders = ",".join("?" for _ in keep_list)
                cur.execute(f"DELETE FROM kv_store WHERE key NOT IN ({placeholders})", keep_list)
            else:
                cur.execute("DELETE FROM kv_store")
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()
