import asyncio
import logging
import random
from typing import Any, List, Optional

import aiohttp
from web3 import AsyncWeb3

from exceptions import TransportError

logger = logging.getLogger("RPCManager")


class AsyncRPCManager:
    """
    Round-robin async RPC manager.
    - PRIMARY_RPC first, then FALLBACK_RPCS.
    - Rotates to the next endpoint on rate limit / quota / hard connection errors.
    - Serves both AsyncWeb3 (contract reads, gas price, broadcast) and raw
      JSON-RPC over aiohttp (bulk eth_getLogs).
    """
    RATE_LIMIT_KEYWORDS = ["429", "403", "rate", "forbidden", "quota", "too many requests", "-32001", "-32005"]
    HARD_ERROR_KEYWORDS = ["serverdisconnected", "connectionerror", "connection refused",
                           "cannot connect", "server disconnected", "connectionreseterror",
                           "clientconnectorerror", "oserror", "gaierror", "remotedisconnected"]

    def __init__(self, primary_url: str, fallback_urls: Optional[List[str]] = None, timeout: int = 60):
        self.rpc_urls = [primary_url] + list(fallback_urls or [])
        self.current_index = 0
        self.timeout = timeout
        self.w3: Optional[AsyncWeb3] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings) -> "AsyncRPCManager":
        return cls(settings.rpc_url, settings.fallback_rpcs, settings.rpc_timeout_sec)

    @property
    def active_url(self) -> str:
        return self.rpc_urls[self.current_index]

    async def _disconnect_provider(self):
        if self.w3 is None:
            return
        try:
            await self.w3.provider.disconnect()
            logger.info("🔒 Provider session closed cleanly.")
        except Exception as e:
            logger.debug(f"Provider disconnect failed: {e}")

    async def connect(self) -> AsyncWeb3:
        """(Re)builds the AsyncWeb3 instance for the current endpoint. Closes the previous provider session first."""
        await self._disconnect_provider()
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.active_url, request_kwargs={"timeout": self.timeout}))
        logger.info(f"🔌 Connected to RPC [{self.current_index + 1}/{len(self.rpc_urls)}]: {self.active_url[:50]}...")
        return self.w3

    async def get_w3(self) -> AsyncWeb3:
        if self.w3 is None:
            await self.connect()
        return self.w3

    def is_rate_limit_error(self, error) -> bool:
        err_str = str(error).lower()
        return any(k in err_str for k in self.RATE_LIMIT_KEYWORDS)

    def is_hard_error(self, error) -> bool:
        err_str = str(error).lower()
        return any(k in err_str for k in self.HARD_ERROR_KEYWORDS)

    async def rotate(self):
        self.current_index = (self.current_index + 1) % len(self.rpc_urls)
        await self.connect()
        cooldown = random.uniform(1.0, 2.0)
        logger.warning(f"⏳ Rotating to {self.active_url[:50]}... (Sleep {cooldown:.1f}s)")
        await asyncio.sleep(cooldown)

    async def handle_error(self, error) -> bool:
        """Rotates endpoints for rate-limit and connection errors. Returns True if it rotated."""
        if self.is_rate_limit_error(error) or self.is_hard_error(error):
            logger.warning(f"⚠️ RPC error on {self.active_url[:40]}: {error}")
            if len(self.rpc_urls) > 1:
                await self.rotate()
            return True
        return False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def request(self, method: str, params: list) -> Any:
        """Raw JSON-RPC call on the active endpoint. Raises TransportError on any failure."""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": self._request_id}
        url = self.active_url
        try:
            session = await self._get_session()
            async with session.post(url, json=payload) as response:
                if response.status not in (200, 201):
                    raise TransportError(f"{method} HTTP {response.status}")
                data = await response.json(content_type=None)
        except TransportError as e:
            await self.handle_error(e)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            await self.handle_error(e)
            raise TransportError(f"{method} failed: {e}") from e

        if "error" in data:
            error = TransportError(f"{method} error: {data['error']}")
            await self.handle_error(error)
            raise error
        return data.get("result")

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber", []), 16)

    async def get_logs(self, address: str, from_block: int, to_block: int) -> List[dict]:
        result = await self.request("eth_getLogs", [{
            "address": address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }])
        return result or []

    async def close(self):
        await self._disconnect_provider()
        self.w3 = None
        if self._session and not self._session.closed:
            await self._session.close()
