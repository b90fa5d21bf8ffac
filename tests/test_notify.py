import asyncio

import httpx

from edgeprobe.config import NOTIFY_BACKOFF_BASE
from edgeprobe.notify import ClientCache, TelegramNotifier, escape_markdown_v2, mask_token

TOKEN = "123456:ABC-def_ghi"


class FakeTelegram:
    """Records Bot API calls and answers them through httpx.MockTransport."""

    def __init__(self, send_ok: bool = True, reachable: bool = True):
        self.send_ok = send_ok
        self.reachable = reachable
        self.calls: list[str] = []
        self.proxies: list = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(method)
        if not self.reachable:
            raise httpx.ConnectError("unreachable", request=request)
        if method == "getMe":
            return httpx.Response(200, json={"ok": True, "result": {"id": 1}})
        if self.send_ok:
            return httpx.Response(200, json={"ok": True, "result": {}})
        return httpx.Response(500, json={"ok": False, "description": "Internal Server Error"})

    def factory(self, proxy):
        self.proxies.append(proxy)
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def notifier(self, chat_ids=("42",), proxies=(), backoff_base=0) -> TelegramNotifier:
        cache = ClientCache(TOKEN, proxies, client_factory=self.factory)
        return TelegramNotifier(TOKEN, list(chat_ids), backoff_base=backoff_base, cache=cache)


def test_escape_markdown_keeps_bold_and_code() -> None:
    assert escape_markdown_v2("*Done* in 1.5s (ok)!") == "*Done* in 1\\.5s \\(ok\\)\\!"
    assert escape_markdown_v2("file `ip.csv`") == "file `ip\\.csv`"


def test_mask_token_hides_secret() -> None:
    masked = mask_token(f"POST https://api.telegram.org/bot{TOKEN}/sendMessage")
    assert TOKEN not in masked
    assert "/bot********************/sendMessage" in masked


def test_disabled_without_chat_ids() -> None:
    telegram = FakeTelegram()
    notifier = telegram.notifier(chat_ids=())
    assert not notifier.enabled
    assert asyncio.run(notifier.send("hello")) is False
    assert telegram.calls == []


def test_send_reuses_negotiated_client() -> None:
    telegram = FakeTelegram()
    notifier = telegram.notifier(chat_ids=("1", "2"))

    async def scenario():
        assert await notifier.send("one")
        assert await notifier.send("two")
        await notifier.aclose()

    asyncio.run(scenario())
    assert telegram.calls == ["getMe"] + ["sendMessage"] * 4


def test_failed_send_retries_then_clears_cache() -> None:
    telegram = FakeTelegram(send_ok=False)
    notifier = telegram.notifier()

    async def scenario():
        ok = await notifier.send("report")
        cached_after_failure = notifier.cache.cached
        telegram.send_ok = True
        ok_again = await notifier.send("report")
        await notifier.aclose()
        return ok, cached_after_failure, ok_again

    ok, cached_after_failure, ok_again = asyncio.run(scenario())

    assert ok is False
    assert cached_after_failure is False
    assert ok_again is True
    assert telegram.calls == ["getMe"] + ["sendMessage"] * 3 + ["getMe", "sendMessage"]


def test_proxies_tried_before_direct() -> None:
    telegram = FakeTelegram(reachable=False)
    notifier = telegram.notifier(proxies=["socks5://127.0.0.1:1080", " "])

    async def scenario():
        ok = await notifier.send("hello")
        await notifier.aclose()
        return ok

    assert asyncio.run(scenario()) is False
    assert telegram.proxies == ["socks5://127.0.0.1:1080", None]


def test_empty_file_is_deleted_not_sent(tmp_path) -> None:
    telegram = FakeTelegram()
    notifier = telegram.notifier()
    path = tmp_path / "ip.csv"
    path.write_text("", encoding="utf-8")

    assert asyncio.run(notifier.send_file(path)) is False
    assert not path.exists()
    assert telegram.calls == []


def test_send_file_uploads_document(tmp_path) -> None:
    telegram = FakeTelegram()
    notifier = telegram.notifier()
    path = tmp_path / "ip.csv"
    path.write_text("ip,port\n1.1.1.1,443\n", encoding="utf-8")

    async def scenario():
        ok = await notifier.send_file(path)
        await notifier.aclose()
        return ok

    assert asyncio.run(scenario()) is True
    assert telegram.calls == ["getMe", "sendDocument"]


def test_retry_waits_double_between_attempts(monkeypatch) -> None:
    delays = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay, *args, **kwargs):
        if delay:
            delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    telegram = FakeTelegram(send_ok=False)
    notifier = telegram.notifier(backoff_base=NOTIFY_BACKOFF_BASE)

    async def scenario():
        ok = await notifier.send("report")
        await notifier.aclose()
        return ok

    assert asyncio.run(scenario()) is False
    assert delays == [1.0, 2.0]
