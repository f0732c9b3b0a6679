"""Tests for the SSRF guard applied to tenant webhook URLs."""

from __future__ import annotations

import asyncio
import ipaddress

import pytest

from stageflow_api.services.ssrf_guard import SSRFGuard, is_blocked_address


def _resolver(*addresses: str):
    calls: list[tuple[str, int]] = []

    async def _resolve(hostname: str, port: int) -> list[str]:
        calls.append((hostname, port))
        return list(addresses)

    _resolve.calls = calls  # type: ignore[attr-defined]
    return _resolve


async def _failing_resolver(hostname: str, port: int) -> list[str]:
    raise OSError("Name or service not known")


async def _slow_resolver(hostname: str, port: int) -> list[str]:
    await asyncio.sleep(10)
    return ["93.184.216.34"]


# ---------------------------------------------------------------------------
# Address classification
# ---------------------------------------------------------------------------


class TestIsBlockedAddress:
    @pytest.mark.parametrize(
        "address",
        [
            "127.0.0.1",
            "10.1.2.3",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.1.1",
            "169.254.169.254",
            "100.64.0.1",
            "0.0.0.0",
            "224.0.0.1",
            "::1",
            "fe80::1",
            "fd00::1",
            "::ffff:127.0.0.1",
            "::ffff:10.0.0.1",
        ],
    )
    def test_non_public_addresses_blocked(self, address: str) -> None:
        assert is_blocked_address(ipaddress.ip_address(address))

    @pytest.mark.parametrize("address", ["93.184.216.34", "8.8.8.8", "2606:4700:4700::1111"])
    def test_public_addresses_allowed(self, address: str) -> None:
        assert not is_blocked_address(ipaddress.ip_address(address))


# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------


class TestSchemeAndShape:
    @pytest.mark.asyncio
    async def test_public_https_url_allowed(self) -> None:
        resolver = _resolver("93.184.216.34")
        verdict = await SSRFGuard(resolver=resolver).validate("https://hooks.example.com/path")

        assert verdict.allowed
        assert verdict.reason is None
        assert resolver.calls == [("hooks.example.com", 443)]

    @pytest.mark.asyncio
    async def test_explicit_port_passed_to_resolver(self) -> None:
        resolver = _resolver("93.184.216.34")
        await SSRFGuard(resolver=resolver).validate("https://hooks.example.com:8443/path")
        assert resolver.calls == [("hooks.example.com", 8443)]

    @pytest.mark.asyncio
    async def test_http_rejected_by_default(self) -> None:
        verdict = await SSRFGuard(resolver=_resolver("93.184.216.34")).validate("http://hooks.example.com")
        assert not verdict.allowed
        assert "HTTPS" in (verdict.reason or "")

    @pytest.mark.asyncio
    async def test_http_allowed_when_enabled(self) -> None:
        guard = SSRFGuard(allow_http=True, resolver=_resolver("93.184.216.34"))
        assert (await guard.validate("http://hooks.example.com")).allowed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["ftp://example.com/x", "file:///etc/passwd", "gopher://example.com", "example.com"])
    async def test_unsupported_schemes(self, url: str) -> None:
        verdict = await SSRFGuard(resolver=_resolver("93.184.216.34")).validate(url)
        assert not verdict.allowed

    @pytest.mark.asyncio
    async def test_credentials_rejected(self) -> None:
        verdict = await SSRFGuard(resolver=_resolver("93.184.216.34")).validate("https://user:pw@example.com/")
        assert not verdict.allowed

    @pytest.mark.asyncio
    async def test_missing_hostname(self) -> None:
        verdict = await SSRFGuard(resolver=_resolver("93.184.216.34")).validate("https:///path")
        assert not verdict.allowed

    @pytest.mark.asyncio
    async def test_malformed_port(self) -> None:
        verdict = await SSRFGuard(resolver=_resolver("93.184.216.34")).validate("https://example.com:99999/")
        assert not verdict.allowed


class TestHostnames:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        [
            "https://localhost/hook",
            "https://LOCALHOST./hook",
            "https://api.localhost/hook",
            "https://printer.local/hook",
            "https://metadata.google.internal/computeMetadata/v1/",
            "https://metadata/hook",
        ],
    )
    async def test_internal_names_blocked_without_resolving(self, url: str) -> None:
        resolver = _resolver("93.184.216.34")
        verdict = await SSRFGuard(resolver=resolver).validate(url)

        assert not verdict.allowed
        assert resolver.calls == []

    @pytest.mark.asyncio
    async def test_percent_encoded_hostname_blocked(self) -> None:
        resolver = _resolver("93.184.216.34")
        verdict = await SSRFGuard(resolver=resolver).validate("https://local%68ost/hook")
        assert not verdict.allowed
        assert resolver.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        [
            "https://127.0.0.1/hook",
            "https://10.0.0.5/hook",
            "https://169.254.169.254/latest/meta-data/",
            "https://[::1]/hook",
            "https://[::ffff:127.0.0.1]/hook",
        ],
    )
    async def test_private_ip_literals_blocked(self, url: str) -> None:
        resolver = _resolver("93.184.216.34")
        verdict = await SSRFGuard(resolver=resolver).validate(url)

        assert not verdict.allowed
        assert resolver.calls == []

    @pytest.mark.asyncio
    async def test_public_ip_literal_allowed_without_resolving(self) -> None:
        resolver = _resolver()
        verdict = await SSRFGuard(resolver=resolver).validate("https://93.184.216.34/hook")

        assert verdict.allowed
        assert resolver.calls == []


class TestResolution:
    @pytest.mark.asyncio
    async def test_name_resolving_to_private_address_blocked(self) -> None:
        verdict = await SSRFGuard(resolver=_resolver("10.0.0.7")).validate("https://evil.example.com/")
        assert not verdict.allowed
        assert "10.0.0.7" in (verdict.reason or "")

    @pytest.mark.asyncio
    async def test_any_private_answer_blocks(self) -> None:
        guard = SSRFGuard(resolver=_resolver("93.184.216.34", "127.0.0.1"))
        assert not (await guard.validate("https://mixed.example.com/")).allowed

    @pytest.mark.asyncio
    async def test_resolution_failure_blocks(self) -> None:
        verdict = await SSRFGuard(resolver=_failing_resolver).validate("https://nxdomain.example.com/")
        assert not verdict.allowed
        assert verdict.reason == "Hostname could not be resolved"

    @pytest.mark.asyncio
    async def test_empty_answer_blocks(self) -> None:
        verdict = await SSRFGuard(resolver=_resolver()).validate("https://empty.example.com/")
        assert not verdict.allowed

    @pytest.mark.asyncio
    async def test_resolution_timeout_blocks(self) -> None:
        guard = SSRFGuard(resolver=_slow_resolver, resolve_timeout=0.01)
        verdict = await guard.validate("https://slow.example.com/")
        assert not verdict.allowed
        assert verdict.reason == "Hostname could not be resolved"
