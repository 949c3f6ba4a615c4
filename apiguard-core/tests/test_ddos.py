"""
Unit Tests for the DDoS Protector
=================================
"""

from datetime import timedelta

import httpx
import pytest

from conftest import BrokenStore, seed_events


def geo_client(countries):
    """GeoLocator backed by a MockTransport answering from a dict."""
    from apiguard_core.geolocation import GeoLocator

    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        ip = request.url.path.split("/")[1]
        calls.append(ip)
        if ip not in countries:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"ip": ip, "country": countries[ip]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeoLocator("https://geo.test/{ip}/json", client=client), calls


@pytest.fixture
def make_protector(store, access_list, responder, alerter, metrics, clock):
    from apiguard_core.config import DDoSConfig
    from apiguard_core.ddos import DDoSProtector

    def _make(geolocator=None, **overrides):
        return DDoSProtector(
            store,
            access_list,
            responder,
            DDoSConfig(**overrides),
            geolocator=geolocator,
            alerter=alerter,
            metrics=metrics,
            clock=clock,
        )
    return _make


class TestAttackDetection:
    """Tests for volumetric detection."""

    async def test_multiple_offenders(self, make_protector, database, clock):
        """Every IP above the threshold is returned, busiest first."""
        from apiguard_core.models import DetectionReason

        await seed_events(database, "203.0.113.7", 150, clock.now - timedelta(seconds=10))
        await seed_events(database, "203.0.113.8", 120, clock.now - timedelta(seconds=10))
        await seed_events(database, "203.0.113.9", 100, clock.now - timedelta(seconds=10))

        result = await make_protector().detect_attack()

        assert result.detected is True
        assert result.reason == DetectionReason.VOLUMETRIC
        assert list(result.evidence["offenders"].items()) == [("203.0.113.7", 150), ("203.0.113.8", 120)]

    async def test_old_traffic_ignored(self, make_protector, database, clock):
        """Only the check window is aggregated."""
        await seed_events(database, "203.0.113.7", 150, clock.now - timedelta(seconds=90))

        result = await make_protector().detect_attack()

        assert result.detected is False

    async def test_whitelisted_excluded(self, make_protector, access_list, database, clock):
        """Whitelisted IPs are never reported as attackers."""
        await access_list.whitelist_add("203.0.113.7")
        await seed_events(database, "203.0.113.7", 500, clock.now)

        result = await make_protector().detect_attack()

        assert result.detected is False

    async def test_store_unavailable(self, alerter, metrics, clock):
        """Store failures report no attack with the degraded flag."""
        from apiguard_core.access_list import IPAccessListManager
        from apiguard_core.ddos import DDoSProtector

        broken = BrokenStore()
        protector = DDoSProtector(broken, IPAccessListManager(broken, clock), alerter=alerter,
                                  metrics=metrics, clock=clock)

        result = await protector.detect_attack()

        assert result.detected is False
        assert result.degraded is True


class TestConnectionRate:
    """Tests for the concurrent-connection check."""

    async def test_above_threshold_alerts(self, make_protector, alert_sink, access_list):
        """Too many connections raises a critical alert and blocks nobody."""
        from apiguard_core.models import DetectionReason

        result = await make_protector().check_connection_rate(812)

        assert result.detected is True
        assert result.reason == DetectionReason.CONNECTION_RATE
        assert alert_sink.alerts[0]["type"] == "high_connection_count"
        assert alert_sink.alerts[0]["level"] == "critical"
        assert await access_list.list("blacklist") == []

    async def test_below_threshold(self, make_protector, alert_sink):
        """Normal connection counts are quiet."""
        result = await make_protector().check_connection_rate(500)

        assert result.detected is False
        assert alert_sink.alerts == []

    async def test_negative_rejected(self, make_protector):
        """A negative count is invalid input."""
        from apiguard_core.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await make_protector().check_connection_rate(-1)


class TestGeographicFilter:
    """Tests for country allow-listing."""

    async def test_disabled_makes_no_lookups(self, make_protector, database, clock):
        """With filtering disabled the geolocation service is never called."""
        geolocator, calls = geo_client({"81.2.69.142": "RU"})
        await seed_events(database, "81.2.69.142", 1, clock.now)

        result = await make_protector(geolocator).check_geographic()

        assert result.detected is False
        assert calls == []

    async def test_disallowed_country_flagged(self, make_protector, database, clock):
        """IPs outside the allow-list are flagged; unknown and private ones are not."""
        geolocator, calls = geo_client({"81.2.69.142": "RU", "8.8.4.4": "us"})
        for ip in ("81.2.69.142", "8.8.4.4", "1.1.1.1", "10.0.0.5"):
            await seed_events(database, ip, 1, clock.now)

        protector = make_protector(geolocator, geo_filtering_enabled=True, allowed_countries=("US", "CA"))
        result = await protector.check_geographic()

        assert result.detected is True
        assert result.evidence["offenders"] == {"81.2.69.142": "RU"}
        assert result.evidence["lookup_failures"] == 1
        assert "10.0.0.5" not in calls


class TestSweep:
    """Tests for the combined sweep and automatic response."""

    async def test_sweep_blocks_offenders(self, make_protector, access_list, alert_sink, database, clock):
        """Volumetric and geographic offenders are handed to the coordinator."""
        geolocator, _ = geo_client({"8.8.8.8": "US", "175.45.176.1": "KP"})
        await seed_events(database, "8.8.8.8", 150, clock.now)
        await seed_events(database, "175.45.176.1", 3, clock.now)

        protector = make_protector(geolocator, geo_filtering_enabled=True, allowed_countries=("US",))
        report = await protector.sweep(current_connections=10)

        assert report.detected is True
        assert {r.ip: r.reason for r in report.responses} == {
            "8.8.8.8": "volumetric",
            "175.45.176.1": "geographic",
        }
        assert await access_list.is_blacklisted("8.8.8.8") is True
        assert await access_list.is_blacklisted("175.45.176.1") is True
        assert {a["type"] for a in alert_sink.alerts} == {"auto_block_volumetric", "auto_block_geographic"}

    async def test_distributed_attack_alert(self, make_protector, alert_sink, database, clock):
        """Several attackers in one pass raise a distributed attack alert."""
        for i in range(3):
            await seed_events(database, f"203.0.113.{i + 1}", 101, clock.now)

        report = await make_protector().sweep()

        assert len(report.responses) == 3
        assert "distributed_attack" in [a["type"] for a in alert_sink.alerts]

    async def test_disabled(self, make_protector, database, clock):
        """With protection disabled the sweep does nothing."""
        await seed_events(database, "203.0.113.7", 500, clock.now)

        report = await make_protector(enabled=False).sweep()

        assert report.skipped == "disabled"
        assert report.responses == []

    async def test_repeated_sweeps_block_once(self, make_protector, access_list, alert_sink, database, clock):
        """An offender already blocked by an earlier sweep is not responded to again."""
        await seed_events(database, "203.0.113.7", 150, clock.now)
        protector = make_protector()

        first = await protector.sweep()
        clock.advance(seconds=30)
        second = await protector.sweep()

        assert [r.ip for r in first.responses] == ["203.0.113.7"]
        assert second.volumetric.detected is True
        assert second.responses == []
        assert second.already_blocked == ["203.0.113.7"]
        assert await access_list.violation_count("203.0.113.7", timedelta(hours=1)) == 1
        assert [a["type"] for a in alert_sink.alerts] == ["auto_block_volumetric"]
