"""
Unit Tests for IP Utilities
===========================
"""

import pytest


class TestIPValidation:
    """Tests for address validation and normalisation."""

    @pytest.mark.parametrize("ip", ["203.0.113.7", "::1", "2001:db8::1", " 10.0.0.1 "])
    def test_valid_addresses(self, ip):
        """Should accept IPv4 and IPv6 addresses."""
        from apiguard_core.ip_utils import is_valid_ip

        assert is_valid_ip(ip) is True

    @pytest.mark.parametrize("ip", ["", None, "999.1.1.1", "example.com", "1.2.3", "unknown"])
    def test_invalid_addresses(self, ip):
        """Should reject malformed addresses."""
        from apiguard_core.ip_utils import is_valid_ip

        assert is_valid_ip(ip) is False

    def test_normalize_compresses_ipv6(self):
        """The same IPv6 client should always map to one key."""
        from apiguard_core.ip_utils import normalize_ip

        assert normalize_ip("2001:0db8:0000:0000:0000:0000:0000:0001") == "2001:db8::1"
        assert normalize_ip(" 203.0.113.7") == "203.0.113.7"

    def test_normalize_rejects_garbage(self):
        """Should raise InvalidIPAddressError for malformed input."""
        from apiguard_core.exceptions import InvalidIPAddressError, ValidationError
        from apiguard_core.ip_utils import normalize_ip

        with pytest.raises(InvalidIPAddressError) as exc:
            normalize_ip("300.1.1.1")

        assert isinstance(exc.value, ValidationError)
        assert exc.value.ip == "300.1.1.1"

    def test_internal_ranges(self):
        """Private, loopback and link-local addresses are internal."""
        from apiguard_core.ip_utils import is_internal_ip

        assert is_internal_ip("10.1.2.3") is True
        assert is_internal_ip("192.168.0.10") is True
        assert is_internal_ip("127.0.0.1") is True
        assert is_internal_ip("169.254.1.1") is True
        assert is_internal_ip("8.8.8.8") is False
