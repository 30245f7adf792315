import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx

from alivehome.services.psp_paypal import CredentialCache, PayPalAdapter


def test_concurrent_callers_share_one_refresh():
    fetches = 0
    fetch_lock = threading.Lock()

    def fetch():
        nonlocal fetches
        with fetch_lock:
            fetches += 1
        time.sleep(0.05)
        return "token-1", 3600

    cache = CredentialCache(fetch)
    with ThreadPoolExecutor(max_workers=8) as pool:
        tokens = list(pool.map(lambda _: cache.get(), range(16)))

    assert set(tokens) == {"token-1"}
    assert fetches == 1
    assert cache.refresh_count == 1


def test_token_is_refreshed_after_expiry():
    now = [1000.0]
    issued = iter(["token-1", "token-2"])
    cache = CredentialCache(lambda: (next(issued), 120), clock=lambda: now[0], skew_seconds=60)

    assert cache.get() == "token-1"
    now[0] += 59
    assert cache.get() == "token-1"
    now[0] += 2
    assert cache.get() == "token-2"


def test_invalidate_ignores_already_replaced_token():
    issued = iter(["token-1", "token-2"])
    cache = CredentialCache(lambda: (next(issued), 3600))

    stale = cache.get()
    cache.invalidate(stale)
    fresh = cache.get()
    cache.invalidate(stale)

    assert fresh == "token-2"
    assert cache.get() == "token-2"


def test_rejected_token_is_refreshed_once_and_request_retried():
    calls: list[str] = []
    tokens = iter(["expired", "fresh"])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            calls.append("token")
            return httpx.Response(200, json={"access_token": next(tokens), "expires_in": 32400})
        calls.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer expired":
            return httpx.Response(401, json={"error": "invalid_token"})
        return httpx.Response(200, json={"id": "ORDER-1", "status": "APPROVED"})

    client = httpx.Client(base_url="https://paypal.test", transport=httpx.MockTransport(handler))
    adapter = PayPalAdapter(client_id="id", client_secret="secret", http_client=client)

    body = adapter._authorized("GET", "/v2/checkout/orders/ORDER-1")

    assert body["status"] == "APPROVED"
    assert calls == ["token", "Bearer expired", "token", "Bearer fresh"]
    assert adapter.credentials.refresh_count == 2
