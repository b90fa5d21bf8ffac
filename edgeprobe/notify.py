"""Telegram notification channel.

Messages and files are pushed through the Bot API with httpx.  The HTTP
client is negotiated lazily by :class:`ClientCache`: each preset proxy is
tried in order, then a direct connection, and the first one whose ``getMe``
call succeeds is kept.  A send that still fails after its retries
invalidates the cache so the next send negotiates again.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Callable, Optional, Sequence

import httpx

from edgeprobe.config import (
    NOTIFY_BACKOFF_BASE,
    NOTIFY_MAX_RETRIES,
    TELEGRAM_API,
    TELEGRAM_CONNECT_TIMEOUT,
    TELEGRAM_TIMEOUT,
)

logger = logging.getLogger(__name__)

# Signature: (proxy_url_or_none) -> client
ClientFactory = Callable[[Optional[str]], httpx.AsyncClient]

_TOKEN_RE = re.compile(r"(bot)\d+:[a-zA-Z0-9_-]+")
_MARKDOWN_SPECIAL = set("_*[]()~`>#+-=|{}.!")


def mask_token(text: str) -> str:
    """Hide bot tokens embedded in API URLs or error messages."""
    return _TOKEN_RE.sub(r"\1********************", text)


def escape_markdown_v2(text: str) -> str:
    """Escape *text* for MarkdownV2, keeping ``*bold*`` and `` `code` `` markers."""
    escaped = "".join(f"\\{ch}" if ch in _MARKDOWN_SPECIAL else ch for ch in text)
    return escaped.replace("\\*", "*").replace("\\`", "`")


def _default_client_factory(proxy: Optional[str]) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        proxy=proxy,
        timeout=httpx.Timeout(TELEGRAM_TIMEOUT, connect=TELEGRAM_CONNECT_TIMEOUT),
    )


class ClientCache:
    """Owns the negotiated Telegram HTTP client: create on demand, drop on failure."""

    def __init__(
        self,
        token: str,
        proxies: Sequence[str] = (),
        api_base: str = TELEGRAM_API,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.token = token
        self.proxies = [p.strip() for p in proxies if p.strip()]
        self.api_base = api_base.rstrip("/")
        self._client_factory = client_factory or _default_client_factory
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> bool:
        return self._client is not None

    def method_url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.token}/{method}"

    async def _try_client(self, proxy: Optional[str]) -> Optional[httpx.AsyncClient]:
        client = self._client_factory(proxy)
        label = proxy or "direct"
        try:
            resp = await client.get(self.method_url("getMe"))
            resp.raise_for_status()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Telegram connection via %s failed: %s", label, mask_token(str(exc)))
            await client.aclose()
            return None
        logger.info("Telegram session established via %s", label)
        return client

    async def get(self) -> Optional[httpx.AsyncClient]:
        """Return the cached client, negotiating a new one if needed."""
        async with self._lock:
            if self._client is not None:
                return self._client
            for proxy in [*self.proxies, None]:
                client = await self._try_client(proxy)
                if client is not None:
                    self._client = client
                    return client
            logger.warning("Could not reach the Telegram API through any route")
            return None

    async def invalidate(self) -> None:
        async with self._lock:
            client, self._client = self._client, None
        if client is not None:
            await client.aclose()
            logger.info("Telegram client invalidated")

    async def aclose(self) -> None:
        await self.invalidate()


class TelegramNotifier:
    """Best-effort notification channel; every call returns success as a bool."""

    def __init__(
        self,
        token: str,
        chat_ids: Sequence[str],
        proxies: Sequence[str] = (),
        max_retries: int = NOTIFY_MAX_RETRIES,
        backoff_base: float = NOTIFY_BACKOFF_BASE,
        cache: Optional[ClientCache] = None,
    ):
        self.token = token
        self.chat_ids = [c.strip() for c in chat_ids if c.strip()]
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.cache = cache or ClientCache(token, proxies)

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_ids)

    async def _post(self, method: str, label: str, **kwargs) -> bool:
        """POST with retries; invalidates the client cache after the last failure."""
        client = await self.cache.get()
        if client is None:
            logger.warning("No Telegram connection, skipping %s", label)
            return False

        url = self.cache.method_url(method)
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.post(url, **kwargs)
                data = resp.json()
                if data.get("ok"):
                    return True
                error = data.get("description") or f"HTTP {resp.status_code}"
            except (httpx.HTTPError, ValueError) as exc:
                error = mask_token(str(exc))

            logger.warning(
                "Telegram %s failed (attempt %d/%d): %s",
                label, attempt, self.max_retries, error,
            )
            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff_base * 2 ** (attempt - 1))

        await self.cache.invalidate()
        return False

    async def send(self, text: str) -> bool:
        """Send *text* to every configured chat."""
        if not self.enabled:
            logger.debug("Telegram not configured, skipping message")
            return False

        payload = {"text": escape_markdown_v2(text), "parse_mode": "MarkdownV2"}
        for chat_id in self.chat_ids:
            if not await self._post("sendMessage", "message", json={**payload, "chat_id": chat_id}):
                return False
        logger.info("Telegram message sent")
        return True

    async def send_file(self, path: str | Path) -> bool:
        """Upload the file at *path* to every configured chat.

        An empty file is deleted and not sent.
        """
        if not self.enabled:
            logger.debug("Telegram not configured, skipping file")
            return False

        path = Path(path)
        if not path.is_file():
            logger.warning("File %s does not exist, not sending", path.name)
            return False
        if path.stat().st_size == 0:
            logger.warning("File %s is empty, deleting it instead of sending", path.name)
            path.unlink()
            return False

        content = path.read_bytes()
        for chat_id in self.chat_ids:
            ok = await self._post(
                "sendDocument",
                f"file {path.name}",
                data={"chat_id": chat_id},
                files={"document": (path.name, content)},
            )
            if not ok:
                return False
        logger.info("Telegram file %s sent", path.name)
        return True

    async def aclose(self) -> None:
        await self.cache.aclose()
