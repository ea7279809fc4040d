"""Tests for the endpoint security validator."""

import ipaddress

import pytest

from file_storage.exceptions import EndpointBlocked, InvalidEndpoint
from security_module.endpoint_validator import EndpointValidator, classify_address, extract_host


def static_resolver(*addresses: str):
    async def resolve(host: str) -> list[str]:
        return list(addresses)

    return resolve


@pytest.mark.unit
class TestExtractHost:
    """Host extraction from the endpoint shapes operators type in."""

    @pytest.mark.parametrize(
        "endpoint,host",
        [
            ("minio.example.com", "minio.example.com"),
            ("minio.example.com:9000", "minio.example.com"),
            ("https://minio.example.com:9000/bucket", "minio.example.com"),
            ("10.0.0.5", "10.0.0.5"),
            ("[::1]", "::1"),
            ("[::1]:6379", "::1"),
            ("http://[fe80::1]:8080/dav", "fe80::1"),
            ("user@sftp.example.com", "sftp.example.com"),
            ("::1", "::1"),
        ],
    )
    def test_extract(self, endpoint, host):
        """Test bare hosts, host:port, URLs and IPv6 literals."""
        assert extract_host(endpoint) == host

    @pytest.mark.parametrize("endpoint", ["", "   ", "[::1", "https://", ":9000"])
    def test_malformed(self, endpoint):
        """Test that unparseable endpoints raise InvalidEndpoint."""
        with pytest.raises(InvalidEndpoint):
            extract_host(endpoint)


@pytest.mark.unit
class TestClassifyAddress:
    """Blocked-range categories."""

    @pytest.mark.parametrize(
        "address,category",
        [
            ("10.1.2.3", "private"),
            ("172.16.5.4", "private"),
            ("172.31.255.255", "private"),
            ("192.168.1.1", "private"),
            ("127.0.0.1", "loopback"),
            ("::1", "loopback"),
            ("169.254.169.254", "link_local"),
            ("fe80::1", "link_local"),
            ("fd00::1", "unique_local"),
            ("0.0.0.0", "unspecified"),
            ("::ffff:127.0.0.1", "loopback"),
            ("8.8.8.8", None),
            ("172.32.0.1", None),
            ("2001:4860:4860::8888", None),
        ],
    )
    def test_classify(self, address, category):
        """Test each range boundary and IPv4-mapped IPv6."""
        assert classify_address(ipaddress.ip_address(address)) == category


@pytest.mark.unit
class TestEndpointValidator:
    """Validation with and without the local-address override."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("endpoint", ["127.0.0.1", "10.0.0.5", "192.168.1.1", "[::1]"])
    async def test_internal_addresses_blocked_by_default(self, endpoint):
        """Test that internal literals are rejected before any connection."""
        validator = EndpointValidator()

        with pytest.raises(EndpointBlocked) as exc_info:
            await validator.validate(endpoint)

        assert exc_info.value.category in ("loopback", "private")
        assert exc_info.value.endpoint == endpoint

    @pytest.mark.asyncio
    async def test_public_address_passes(self):
        """Test that a public literal is accepted without a lookup."""
        validator = EndpointValidator(resolver=static_resolver())

        assert await validator.validate("8.8.8.8") == ["8.8.8.8"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("endpoint", ["127.0.0.1", "10.0.0.5", "192.168.1.1", "[::1]", "8.8.8.8"])
    async def test_override_allows_everything(self, endpoint):
        """Test that allow_local_addresses turns validation off."""
        validator = EndpointValidator(allow_local_addresses=True)

        assert await validator.validate(endpoint) == []

    @pytest.mark.asyncio
    async def test_hostname_resolving_to_private_is_blocked(self):
        """Test that names are checked through every resolved address."""
        # Arrange
        validator = EndpointValidator(resolver=static_resolver("93.184.216.34", "10.20.30.40"))

        # Act & Assert
        with pytest.raises(EndpointBlocked) as exc_info:
            await validator.validate("https://rebind.example.com/dav")
        assert exc_info.value.address == "10.20.30.40"
        assert exc_info.value.category == "private"

    @pytest.mark.asyncio
    async def test_hostname_resolving_to_public_passes(self):
        """Test that a name with only public addresses is accepted."""
        validator = EndpointValidator(resolver=static_resolver("93.184.216.34", "2606:2800:220:1::"))

        addresses = await validator.validate("files.example.com:21")

        assert addresses == ["93.184.216.34", "2606:2800:220:1::"]

    @pytest.mark.asyncio
    async def test_unresolvable_host_is_invalid(self):
        """Test that a name without addresses raises InvalidEndpoint."""
        validator = EndpointValidator(resolver=static_resolver())

        with pytest.raises(InvalidEndpoint):
            await validator.validate("nowhere.invalid")

    def test_blocked_ranges_are_described(self):
        """Test the display list of blocked ranges."""
        ranges = EndpointValidator.blocked_ranges()

        assert "127.0.0.0/8 (IPv4 loopback)" in ranges
        assert any(r.startswith("fc00::/7") for r in ranges)
