"""Upstash Redis REST transport.

Commands are POSTed as JSON arrays (``["LPUSH", "key", "value"]``) with a
bearer token. Multi-command atomic operations use the ``/multi-exec``
transaction endpoint; the conditional list set runs a short Lua script.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from pyfleet._constants import STORE_TIMEOUT_SECONDS
from pyfleet.exceptions import StoreError, StoreTimeoutError

_logger = logging.getLogger(__name__)

_LIST_SET_IF_SCRIPT = """
local current = redis.call('LINDEX', KEYS[1], ARGV[1])
if current == ARGV[2] then
  redis.call('LSET', KEYS[1], ARGV[1], ARGV[3])
  return 1
end
return 0
"""


class UpstashTransport:
    """:class:`~pyfleet._kv.KeyValueStore` backed by the Upstash REST API.

    Parameters
    ----------
    base_url : str
        REST endpoint (``https://<db>.upstash.io``).
    token : str
        REST token sent as ``Authorization: Bearer``.
    http_session : aiohttp.ClientSession or None
        Shared session. When omitted the transport creates (and closes) its own.
    timeout : float
        Total request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        http_session: aiohttp.ClientSession | None = None,
        timeout: float = STORE_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._http = http_session
        self._owns_session = http_session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._http

    async def _post(self, path: str, body: Any, *, command: str) -> Any:
        url = f"{self._base_url}{path}"
        headers = {
            "authorization": f"Bearer {self._token}",
            "content-type": "application/json",
        }
        _logger.debug("Upstash %s %s", command, path or "/")

        try:
            async with self._session().post(url, data=json.dumps(body), headers=headers, timeout=self._timeout) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise StoreError(f"HTTP {resp.status} for {command}: {text[:200]}", command=command)
        except StoreError:
            raise
        except TimeoutError as exc:
            raise StoreTimeoutError(f"{command} timed out", command=command) from exc
        except aiohttp.ClientError as exc:
            raise StoreError(f"{command} failed: {exc}", command=command) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Invalid JSON reply for {command}: {text[:200]}", command=command) from exc

    @staticmethod
    def _result(reply: Any, command: str) -> Any:
        if not isinstance(reply, dict):
            raise StoreError(f"Unexpected reply for {command}: {reply!r}", command=command)
        if reply.get("error"):
            raise StoreError(f"{command} error: {reply['error']}", command=command)
        return reply.get("result")

    async def command(self, *args: Any) -> Any:
        """Run one Redis command and return its ``result``."""
        name = str(args[0]).upper()
        reply = await self._post("", [str(a) for a in args], command=name)
        return self._result(reply, name)

    async def transaction(self, *commands: list[Any]) -> list[Any]:
        """Run *commands* atomically (MULTI/EXEC) and return their results."""
        name = "MULTI-EXEC(" + ",".join(str(cmd[0]).upper() for cmd in commands) + ")"
        body = [[str(a) for a in cmd] for cmd in commands]
        reply = await self._post("/multi-exec", body, command=name)
        if not isinstance(reply, list) or len(reply) != len(commands):
            raise StoreError(f"Unexpected transaction reply: {reply!r}", command=name)
        return [self._result(item, name) for item in reply]

    # ------------------------------------------------------------------
    # KeyValueStore
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self.command("GET", key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: int | None = None,
        only_if_absent: bool = False,
    ) -> bool:
        args: list[Any] = ["SET", key, value]
        if only_if_absent:
            args.append("NX")
        if ttl_seconds:
            args.extend(["EX", int(ttl_seconds)])
        return await self.command(*args) == "OK"

    async def list_prepend(self, key: str, value: str, *, max_len: int | None = None) -> int:
        if max_len is None:
            return int(await self.command("LPUSH", key, value))
        results = await self.transaction(
            ["LPUSH", key, value],
            ["LTRIM", key, 0, max_len - 1],
            ["LLEN", key],
        )
        return int(results[2])

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        await self.command("LTRIM", key, start, stop)

    async def list_range(self, key: str, start: int, stop: int) -> list[str]:
        result = await self.command("LRANGE", key, start, stop)
        return list(result or [])

    async def list_index(self, key: str, index: int) -> str | None:
        return await self.command("LINDEX", key, index)

    async def list_set_if(self, key: str, index: int, expected: str, value: str) -> bool:
        result = await self.command("EVAL", _LIST_SET_IF_SCRIPT, 1, key, index, expected, value)
        return result == 1

    async def expire(self, key: str, seconds: int) -> bool:
        return await self.command("EXPIRE", key, int(seconds)) == 1

    async def persist(self, key: str) -> bool:
        return await self.command("PERSIST", key) == 1

    async def keys(self, pattern: str) -> list[str]:
        result = await self.command("KEYS", pattern)
        return sorted(result or [])

    async def close(self) -> None:
        if self._owns_session and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def ping(self) -> bool:
        try:
            return await self.command("PING") == "PONG"
        except StoreError:
            _logger.warning("Upstash ping failed", exc_info=True)
            return False

