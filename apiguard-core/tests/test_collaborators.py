"""
Unit Tests for Alerting, Geolocation and Metrics
================================================
"""

import json

import httpx
import pytest


class TestAlerter:
    """Tests for fire-and-forget alert delivery."""

    async def test_memory_sink_payload(self):
        """Alerts carry component, level, type, message and timestamp."""
        from apiguard_core.alerts import Alerter, MemoryAlertSink
        from apiguard_core.models import AlertLevel

        sink = MemoryAlertSink()
        delivered = await Alerter([sink]).send_alert("security", AlertLevel.WARNING, "auto_block_pattern", "msg")

        assert delivered is True
        alert = sink.alerts[0]
        assert alert["component"] == "security"
        assert alert["level"] == "warning"
        assert alert["type"] == "auto_block_pattern"
        assert alert["message"] == "msg"
        assert alert["timestamp"].endswith("+00:00")

    async def test_one_failing_sink(self):
        """A failing sink does not prevent delivery to the others."""
        from apiguard_core.alerts import Alerter, MemoryAlertSink
        from apiguard_core.models import AlertLevel

        class Broken:
            async def send_alert(self, *args):
                raise RuntimeError("down")

        sink = MemoryAlertSink()
        delivered = await Alerter([Broken(), sink]).send_alert("c", AlertLevel.INFO, "t", "m")

        assert delivered is True
        assert len(sink.alerts) == 1

    async def test_webhook_posts_json(self):
        """The webhook sink posts the alert payload as JSON."""
        from apiguard_core.alerts import WebhookAlertSink
        from apiguard_core.models import AlertLevel

        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = WebhookAlertSink("https://hooks.test/alerts", client=client)

        await sink.send_alert("ddos_protection", AlertLevel.CRITICAL, "distributed_attack", "3 IPs")
        await sink.aclose()

        assert received[0]["level"] == "critical"
        assert received[0]["type"] == "distributed_attack"

    async def test_webhook_client_error(self):
        """A rejected webhook raises AlertDeliveryError without retrying."""
        from apiguard_core.alerts import Alerter, WebhookAlertSink
        from apiguard_core.exceptions import AlertDeliveryError
        from apiguard_core.models import AlertLevel

        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(403)

        sink = WebhookAlertSink(
            "https://hooks.test/alerts", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )

        with pytest.raises(AlertDeliveryError):
            await sink.send_alert("security", AlertLevel.WARNING, "t", "m")
        assert len(calls) == 1
        assert await Alerter([sink]).send_alert("security", AlertLevel.WARNING, "t", "m") is False


class TestGeoLocator:
    """Tests for the HTTP geolocation client."""

    async def test_resolve_country(self):
        """Should return the upper-case country code."""
        from apiguard_core.geolocation import GeoLocator

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/8.8.8.8/json"
            return httpx.Response(200, json={"ip": "8.8.8.8", "country": "us", "org": "AS15169"})

        locator = GeoLocator(
            "https://geo.test/{ip}/json", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )

        assert await locator.resolve_country("8.8.8.8") == "US"

    async def test_missing_country(self):
        """A response without a country resolves to None."""
        from apiguard_core.geolocation import GeoLocator

        locator = GeoLocator(
            "https://geo.test/{ip}/json",
            client=httpx.AsyncClient(transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"ip": "1.1.1.1", "bogon": True})
            )),
        )

        assert await locator.resolve_country("1.1.1.1") is None

    async def test_bad_payload(self):
        """Non-JSON answers raise GeolocationError."""
        from apiguard_core.exceptions import GeolocationError
        from apiguard_core.geolocation import GeoLocator

        locator = GeoLocator(
            "https://geo.test/{ip}/json",
            client=httpx.AsyncClient(transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>rate limited</html>")
            )),
        )

        with pytest.raises(GeolocationError):
            await locator.resolve_country("1.1.1.1")


class TestMetricsRecorder:
    """Tests for in-process metrics."""

    def test_counters_and_gauges(self):
        """Counters accumulate per tag set; gauges keep the last value."""
        from apiguard_core.metrics import MetricNames, MetricsRecorder

        metrics = MetricsRecorder(service="apiguard", environment="test")
        metrics.record_metric("security", MetricNames.AUTO_BLOCKS, tags={"reason": "pattern"})
        metrics.record_metric("security", MetricNames.AUTO_BLOCKS, tags={"reason": "pattern"})
        metrics.record_metric("security", MetricNames.AUTO_BLOCKS, tags={"reason": "volumetric"})
        metrics.set_gauge("ddos_protection", MetricNames.CONCURRENT_CONNECTIONS, 10)
        metrics.set_gauge("ddos_protection", MetricNames.CONCURRENT_CONNECTIONS, 42)

        assert metrics.get_counter("security", MetricNames.AUTO_BLOCKS, {"reason": "pattern"}) == 2
        assert metrics.get_gauge("ddos_protection", MetricNames.CONCURRENT_CONNECTIONS) == 42

    def test_prometheus_export(self):
        """Export should produce Prometheus text lines with service labels."""
        from apiguard_core.metrics import MetricNames, MetricsRecorder

        metrics = MetricsRecorder(service="apiguard", environment="test")
        metrics.record_metric("security", MetricNames.AUTO_BLOCKS, tags={"reason": "pattern"})

        output = metrics.export_prometheus()

        assert (
            'apiguard_auto_blocks_total{service="apiguard",env="test",'
            'component="security",reason="pattern"} 1' in output
        )
