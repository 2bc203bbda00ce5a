"""Tests de proveedores externos: HTTP, caché Redis y señal de dispositivo."""

import httpx
import pytest

from motor_confianza.domain.schemas import DeviceHealthReport
from motor_confianza.infrastructure.cache.redis_client import RedisManager
from motor_confianza.services.risk_scoring import RiskScoringEngine
from motor_confianza.services.signal_providers import (
    CachedDeviceHealthProvider,
    DeviceHealthSignal,
    HttpDeviceHealthProvider,
    device_health_score,
)


class FakeRedisClient:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ttl


class FakeRedisManager:
    def __init__(self):
        self.client = FakeRedisClient()
        self.is_connected = True


class RecordingProvider:
    def __init__(self, report):
        self.report = report
        self.calls = []

    async def fetch(self, device_id, context=None, bypass_cache=False):
        self.calls.append((device_id, bypass_cache))
        return self.report


class TestDeviceHealthScore:

    @pytest.mark.parametrize(
        "report,expected",
        [
            (DeviceHealthReport(), 100),
            (DeviceHealthReport(is_rooted=True), 60),
            (DeviceHealthReport(is_emulator=True), 60),
            (DeviceHealthReport(integrity_passed=False), 70),
            (DeviceHealthReport(os_patch_age_days=180), 100),
            (DeviceHealthReport(os_patch_age_days=181), 90),
            (DeviceHealthReport(is_rooted=True, is_emulator=True), 20),
            (
                DeviceHealthReport(
                    is_rooted=True, is_emulator=True,
                    integrity_passed=False, os_patch_age_days=400,
                ),
                0,
            ),
        ],
    )
    def test_penalties(self, report, expected):
        assert device_health_score(report) == expected


class TestHttpDeviceHealthProvider:

    async def test_parses_response_and_sends_api_key(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={"is_rooted": True, "integrity_passed": True,
                      "os_patch_age_days": 12, "vendor": "ignored"},
            )

        provider = HttpDeviceHealthProvider(
            "https://health.test/v1", api_key="k-123",
            transport=httpx.MockTransport(handler),
        )
        report = await provider.fetch("dev-1")

        assert report == DeviceHealthReport(is_rooted=True, os_patch_age_days=12)
        assert seen["path"].endswith("/devices/dev-1/health")
        assert seen["auth"] == "Bearer k-123"

    async def test_timeout_becomes_error_report(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        provider = HttpDeviceHealthProvider(
            "https://health.test", transport=httpx.MockTransport(handler)
        )
        assert (await provider.fetch("dev-1")).error == "timeout"

    async def test_http_error_becomes_error_report(self):
        provider = HttpDeviceHealthProvider(
            "https://health.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        assert (await provider.fetch("dev-1")).error == "http_error"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, content=b"not json"),
            httpx.Response(200, json={"os_patch_age_days": -3}),
        ],
    )
    async def test_invalid_payload_becomes_error_report(self, response):
        provider = HttpDeviceHealthProvider(
            "https://health.test",
            transport=httpx.MockTransport(lambda request: response),
        )
        assert (await provider.fetch("dev-1")).error == "invalid_response"


class TestCachedDeviceHealthProvider:

    async def test_second_fetch_is_served_from_cache(self):
        inner = RecordingProvider(DeviceHealthReport(is_emulator=True))
        redis = FakeRedisManager()
        cached = CachedDeviceHealthProvider(inner, redis, ttl=900)

        first = await cached.fetch("dev-1")
        second = await cached.fetch("dev-1")

        assert first == second == DeviceHealthReport(is_emulator=True)
        assert len(inner.calls) == 1
        assert redis.client.ttls["device_health:dev-1"] == 900

    async def test_bypass_cache_refreshes(self):
        inner = RecordingProvider(DeviceHealthReport())
        cached = CachedDeviceHealthProvider(inner, FakeRedisManager(), ttl=900)

        await cached.fetch("dev-1")
        await cached.fetch("dev-1", bypass_cache=True)

        assert inner.calls == [("dev-1", False), ("dev-1", True)]

    async def test_error_reports_are_not_cached(self):
        inner = RecordingProvider(DeviceHealthReport(error="timeout"))
        redis = FakeRedisManager()
        cached = CachedDeviceHealthProvider(inner, redis, ttl=900)

        await cached.fetch("dev-1")
        await cached.fetch("dev-1")

        assert len(inner.calls) == 2
        assert redis.client.store == {}

    async def test_disconnected_redis_falls_through(self):
        inner = RecordingProvider(DeviceHealthReport())
        cached = CachedDeviceHealthProvider(inner, RedisManager("redis://localhost:6379/0"), ttl=900)

        await cached.fetch("dev-1")
        await cached.fetch("dev-1")
        assert len(inner.calls) == 2


class TestDeviceHealthSignal:

    async def test_without_device_uses_fallback(self):
        signal = DeviceHealthSignal(RecordingProvider(DeviceHealthReport()), fallback=50)
        assert await signal.fetch("@alice", {"device_hash": None}, timeout=0.5) == 50

    async def test_explicit_device_id_wins(self):
        provider = RecordingProvider(DeviceHealthReport(is_rooted=True))
        signal = DeviceHealthSignal(provider)

        value = await signal.fetch(
            "@alice", {"device_id": "dev-9", "device_hash": "d" * 64, "bypass_cache": True}, 0.5
        )

        assert value == 60
        assert provider.calls == [("dev-9", True)]

    async def test_error_report_uses_fallback(self):
        signal = DeviceHealthSignal(
            RecordingProvider(DeviceHealthReport(error="http_error")), fallback=45
        )
        assert await signal.fetch("@alice", {"device_id": "dev-1"}, 0.5) == 45

    async def test_feeds_scoring_engine(self, audit, references, profiles, clock):
        provider = RecordingProvider(DeviceHealthReport(integrity_passed=False))
        engine = RiskScoringEngine(
            audit      = audit,
            references = references,
            profiles   = profiles,
            providers  = [DeviceHealthSignal(provider)],
            clock      = clock,
        )
        await audit.record_event("@alice", "device_register", device_hash="e" * 64)

        result = await engine.calculate_score("@alice")

        assert result.components["device_health"] == 70
        assert provider.calls == [("e" * 64, False)]
