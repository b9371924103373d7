"""
连通性服务 (Connectivity Service)

run_when_online(trigger): 反复探测后端存活地址，直到收到 2xx/401 应答才返回。
失败时指数退避 + 抖动；并发调用共享同一次探测。
"""
import asyncio
import logging
import random
from typing import Optional

import httpx

from core.constants import ConnectivityTrigger

logger = logging.getLogger(__name__)


class ConnectivityService:
    """后端连通性探测"""

    # 401 表示服务可达但尚未认证，同样视为在线
    ONLINE_STATUS_CODES = {401}

    def __init__(
        self,
        base_url: str,
        path: str = "/access",
        timeout: float = 5.0,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
        self.timeout = timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._client = client
        self._owns_client = client is None
        self._inflight: Optional[asyncio.Task] = None
        self.checks_total = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def check(self) -> bool:
        """单次探测"""
        self.checks_total += 1
        try:
            resp = await self._get_client().post(self.url)
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe failed: {type(e).__name__}: {e}")
            return False
        online = resp.is_success or resp.status_code in self.ONLINE_STATUS_CODES
        if not online:
            logger.debug(f"Connectivity probe returned HTTP {resp.status_code}")
        return online

    def _backoff(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return delay * (0.5 + random.random())

    async def _wait_until_online(self, trigger: ConnectivityTrigger) -> None:
        attempt = 0
        while not await self.check():
            attempt += 1
            delay = self._backoff(attempt)
            logger.warning(
                f"No connectivity ({trigger.value}), attempt {attempt}. Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
        logger.info(f"Connectivity confirmed ({trigger.value}) after {attempt + 1} probe(s)")

    async def run_when_online(self, trigger: ConnectivityTrigger) -> None:
        """等待后端可达；同一时刻的多次调用合并为一次探测循环"""
        trigger = ConnectivityTrigger(trigger)
        if self._inflight is None or self._inflight.done():
            logger.info(f"Connectivity check triggered by '{trigger.value}'")
            self._inflight = asyncio.create_task(self._wait_until_online(trigger))
        await asyncio.shield(self._inflight)

    async def close(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
