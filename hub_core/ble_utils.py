from __future__ import annotations

import inspect
import re
from collections.abc import Iterable
from typing import Any

_MAC_RE = re.compile(r"^(?:[0-9A-Fa-f]{2}(?:[:-]|$)){6}")

WRITE_PROPERTIES = ("write", "write-without-response")
NOTIFY_PROPERTIES = ("notify", "indicate")

# ATT header overhead subtracted from the negotiated MTU for one write.
ATT_OVERHEAD = 3
DEFAULT_MTU = 23


def is_valid_mac(mac: str) -> bool:
    """Return True if the provided string looks like a MAC address.

    Accepts colon or hyphen separators. Non-MAC ids (CoreBluetooth UUIDs)
    are still valid device ids; this is only used for log hints.
    """
    if not isinstance(mac, str):
        return False
    return bool(_MAC_RE.match(mac))


async def resolve_services(client: Any) -> Any | None:
    """
    Works with Bleak versions where:
      - await client.get_services() exists, OR
      - client.get_services() returns a non-awaitable collection, OR
      - services are exposed as client.services
    """
    get_svc = getattr(client, "get_services", None)
    if get_svc:
        if inspect.iscoroutinefunction(get_svc):
            return await get_svc()
        result = get_svc()
        if inspect.isawaitable(result):
            return await result
        return result

    if hasattr(client, "services"):
        return client.services

    return None


def _props(char: Any) -> set[str]:
    return {str(p).lower() for p in (getattr(char, "properties", None) or ())}


def find_service(services: Any, service_uuid: str) -> Any | None:
    if services is None:
        return None
    getter = getattr(services, "get_service", None)
    if getter is not None:
        svc = getter(service_uuid)
        if svc is not None:
            return svc
    for svc in services:
        if str(getattr(svc, "uuid", "")).lower() == service_uuid.lower():
            return svc
    return None


def find_characteristic(
    service: Any, char_uuid: str | None, fallback_props: Iterable[str]
) -> Any | None:
    """Look up a characteristic by UUID, else the first one with a fallback property."""
    chars = list(getattr(service, "characteristics", None) or ())
    if char_uuid:
        for ch in chars:
            if str(getattr(ch, "uuid", "")).lower() == char_uuid.lower():
                return ch
    wanted = {p.lower() for p in fallback_props}
    for ch in chars:
        if _props(ch) & wanted:
            return ch
    return None


def supports_response(char: Any) -> bool:
    """Prefer acknowledged writes when the characteristic allows them."""
    return "write" in _props(char)


def chunk_size(mtu: int | None) -> int:
    mtu = mtu or DEFAULT_MTU
    return max(1, int(mtu) - ATT_OVERHEAD)


def chunked(data: bytes, size: int) -> list[bytes]:
    if not data:
        return [b""]
    return [data[i : i + size] for i in range(0, len(data), size)]


__all__ = [
    "chunk_size",
    "chunked",
    "find_characteristic",
    "find_service",
    "is_valid_mac",
    "resolve_services",
    "supports_response",
]
