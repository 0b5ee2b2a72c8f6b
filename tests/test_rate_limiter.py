import asyncio

import pytest
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from rate_limiter import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimitMiddleware,
    RateLimitRule,
    get_client_ip,
    load_rate_limit_config_from_env,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def build_config(**overrides) -> RateLimitConfig:
    values = dict(
        enabled=True,
        prediction=RateLimitRule(limit=100, window_seconds=60),
        api=RateLimitRule(limit=100, window_seconds=60),
        auth=RateLimitRule(limit=100, window_seconds=900),
        max_cache_entries=100,
        trusted_proxy_count=0,
    )
    values.update(overrides)
    return RateLimitConfig(**values)


def build_app(config: RateLimitConfig, limiter=None) -> Starlette:
    limiter = limiter or InMemoryRateLimiter(max_entries=config.max_cache_entries)

    def ok(request):
        return JSONResponse({"ok": True})

    app = Starlette(routes=[
        Route("/api/prediction", ok, methods=["POST"]),
        Route("/api/usage", ok, methods=["GET"]),
        Route("/auth/callback", ok, methods=["POST"]),
        Route("/health", ok, methods=["GET"]),
    ])
    app.add_middleware(RateLimitMiddleware, limiter=limiter, config=config)
    return app


def test_fourth_call_in_window_is_rejected_then_allowed_after_window():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_entries=100, clock=clock)

    assert limiter.check("prediction:1.2.3.4", 60, 3)
    clock.now += 1
    assert limiter.check("prediction:1.2.3.4", 60, 3)
    clock.now += 1
    assert limiter.check("prediction:1.2.3.4", 60, 3)
    clock.now += 1
    assert not limiter.check("prediction:1.2.3.4", 60, 3)

    clock.now += 60
    assert limiter.check("prediction:1.2.3.4", 60, 3)


def test_rejected_requests_do_not_extend_the_window():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_entries=100, clock=clock)

    assert limiter.check("key", 10, 1)
    for _ in range(5):
        clock.now += 1
        assert not limiter.check("key", 10, 1)
    clock.now += 5
    assert limiter.check("key", 10, 1)


def test_sweep_drops_idle_identities():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_entries=100, clock=clock)
    limiter.check("old", 60, 5)
    clock.now += 500
    limiter.check("fresh", 60, 5)

    removed = limiter.sweep(idle_seconds=300)

    assert removed == 1
    assert len(limiter) == 1


def test_eviction_keeps_store_bounded():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_entries=3, clock=clock)
    for index in range(5):
        clock.now += 1
        assert limiter.check(f"client-{index}", 60, 5)

    assert len(limiter) == 3


def test_close_clears_state():
    limiter = InMemoryRateLimiter(max_entries=10)
    limiter.check("key", 60, 5)
    asyncio.run(limiter.close())
    assert len(limiter) == 0


def test_prediction_limit_blocks_after_limit():
    config = build_config(prediction=RateLimitRule(limit=2, window_seconds=60))
    client = TestClient(build_app(config))

    assert client.post("/api/prediction").status_code == 200
    assert client.post("/api/prediction").status_code == 200

    resp = client.post("/api/prediction")
    assert resp.status_code == 429
    assert resp.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert resp.headers["retry-after"] == "60"


def test_prediction_and_api_rules_are_counted_separately():
    config = build_config(
        prediction=RateLimitRule(limit=1, window_seconds=60),
        api=RateLimitRule(limit=1, window_seconds=60),
    )
    client = TestClient(build_app(config))

    assert client.post("/api/prediction").status_code == 200
    assert client.get("/api/usage").status_code == 200
    assert client.post("/api/prediction").status_code == 429
    assert client.get("/api/usage").status_code == 429


def test_auth_path_has_its_own_limit():
    config = build_config(auth=RateLimitRule(limit=1, window_seconds=900))
    client = TestClient(build_app(config))

    assert client.post("/auth/callback").status_code == 200
    assert client.post("/auth/callback").status_code == 429
    assert client.get("/api/usage").status_code == 200


def test_unmatched_paths_are_not_limited():
    config = build_config(api=RateLimitRule(limit=1, window_seconds=60))
    client = TestClient(build_app(config))

    for _ in range(5):
        assert client.get("/health").status_code == 200


def test_disabled_limiter_allows_everything():
    config = build_config(enabled=False, prediction=RateLimitRule(limit=1, window_seconds=60))
    client = TestClient(build_app(config))

    for _ in range(3):
        assert client.post("/api/prediction").status_code == 200


def test_untrusted_proxy_ignores_forwarded_for():
    config = build_config(prediction=RateLimitRule(limit=1, window_seconds=60), trusted_proxy_count=0)
    client = TestClient(build_app(config))

    headers_a = {"X-Forwarded-For": "203.0.113.10"}
    headers_b = {"X-Forwarded-For": "203.0.113.11"}

    assert client.post("/api/prediction", headers=headers_a).status_code == 200
    assert client.post("/api/prediction", headers=headers_b).status_code == 429


def test_trusted_proxy_uses_forwarded_for():
    config = build_config(prediction=RateLimitRule(limit=1, window_seconds=60), trusted_proxy_count=1)
    client = TestClient(build_app(config))

    headers_a = {"X-Forwarded-For": "203.0.113.10, 10.0.0.1"}
    headers_b = {"X-Forwarded-For": "203.0.113.11, 10.0.0.1"}

    assert client.post("/api/prediction", headers=headers_a).status_code == 200
    assert client.post("/api/prediction", headers=headers_b).status_code == 200
    assert client.post("/api/prediction", headers=headers_a).status_code == 429


class _FakeRequest:
    def __init__(self, headers, host="10.0.0.9"):
        self.headers = headers
        self.client = type("Client", (), {"host": host})()


def test_get_client_ip_prefers_forwarded_hop_then_real_ip():
    assert get_client_ip(_FakeRequest({"x-forwarded-for": "198.51.100.7, 10.0.0.1"}), 1) == "198.51.100.7"
    assert get_client_ip(_FakeRequest({"x-forwarded-for": "198.51.100.7"}), 3) == "198.51.100.7"
    assert get_client_ip(_FakeRequest({"x-real-ip": "198.51.100.8"}), 1) == "198.51.100.8"
    assert get_client_ip(_FakeRequest({"x-real-ip": "198.51.100.8"}), 0) == "10.0.0.9"
    assert get_client_ip(_FakeRequest({}, host=None), 1) == "unknown"


def test_skip_rate_limits_env_disables(monkeypatch):
    monkeypatch.setenv("SKIP_RATE_LIMITS", "true")
    assert load_rate_limit_config_from_env().enabled is False

    monkeypatch.setenv("SKIP_RATE_LIMITS", "false")
    monkeypatch.setenv("RATE_LIMIT_PREDICTION_PER_WINDOW", "7")
    config = load_rate_limit_config_from_env()
    assert config.enabled is True
    assert config.prediction.limit == 7


def test_config_validation_reports_bad_rules():
    build_config().validate()

    config = build_config(
        prediction=RateLimitRule(limit=-1, window_seconds=60),
        api=RateLimitRule(limit=30, window_seconds=0),
    )
    with pytest.raises(RuntimeError) as excinfo:
        config.validate()
    message = str(excinfo.value)
    assert "RATE_LIMIT_PREDICTION_PER_WINDOW" in message
    assert "RATE_LIMIT_API_WINDOW_SECONDS" in message
