"""
Client context for compliance records.

Electronic signatures and audit entries carry best-effort forensic context:
the client IP, the user agent, and a device fingerprint. None of it is part
of the integrity guarantee; a missing value is recorded as ``None``.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
from dataclasses import dataclass
from typing import Protocol

from starlette.requests import Request

from gxp_compliance.core.config import get_settings
from gxp_compliance.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientMetadata:
    """Client details attached to signatures and audit entries."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None


class ClientContextProvider(Protocol):
    """Collaborator supplying best-effort client identification."""

    async def client_ip(self) -> str | None: ...

    async def user_agent(self) -> str | None: ...

    async def device_fingerprint(self) -> str | None: ...


def _is_trusted_proxy(remote_ip: str) -> bool:
    """Check whether *remote_ip* falls within a configured trusted proxy CIDR."""
    settings = get_settings()
    try:
        addr = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    return any(
        addr in ipaddress.ip_network(cidr, strict=False) for cidr in settings.trusted_proxy_cidrs
    )


def get_client_ip(request: Request) -> str:
    """Extract real client IP, only trusting proxy headers from known proxies.

    If the direct connection comes from a trusted proxy CIDR, the
    X-Forwarded-For / X-Real-IP headers are honoured.  Otherwise the
    connection's remote address is returned directly, preventing IP spoofing.
    """
    connection_ip = request.client.host if request.client else "unknown"

    if connection_ip == "unknown" or not _is_trusted_proxy(connection_ip):
        return connection_ip

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # leftmost entry is the originating client
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return connection_ip


def compute_device_fingerprint(attributes: dict[str, str | None]) -> str:
    """Hash a set of browser/device attributes into a stable identifier."""
    encoded = json.dumps(attributes, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class RequestClientContext:
    """Derive client context from the incoming HTTP request."""

    FINGERPRINT_HEADERS = (
        "user-agent",
        "accept-language",
        "sec-ch-ua-platform",
        "x-device-fingerprint",
    )

    def __init__(self, request: Request) -> None:
        self._request = request

    async def client_ip(self) -> str | None:
        ip = get_client_ip(self._request)
        return None if ip == "unknown" else ip

    async def user_agent(self) -> str | None:
        return self._request.headers.get("user-agent")

    async def device_fingerprint(self) -> str | None:
        attributes = {name: self._request.headers.get(name) for name in self.FINGERPRINT_HEADERS}
        if not any(attributes.values()):
            return None
        return compute_device_fingerprint(attributes)


async def collect_client_metadata(provider: ClientContextProvider | None) -> ClientMetadata:
    """Gather client metadata, tolerating any collaborator failure."""
    if provider is None:
        return ClientMetadata()

    values: dict[str, str | None] = {}
    for field_name, getter in (
        ("ip_address", provider.client_ip),
        ("user_agent", provider.user_agent),
        ("device_fingerprint", provider.device_fingerprint),
    ):
        try:
            values[field_name] = await getter()
        except Exception:
            logger.warning("client_context_unavailable", field=field_name, exc_info=True)
            values[field_name] = None
    return ClientMetadata(**values)
