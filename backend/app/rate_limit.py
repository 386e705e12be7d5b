"""Rate limiting configuration for the ScalingAd backend.

Authenticated calls are limited per actor; anonymous calls (webhooks,
health) fall back to the client IP. Forwarded headers are honored only
from trusted proxy addresses.
"""

import ipaddress
import os
from typing import Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from scalingad.logging_config import get_logger

logger = get_logger("backend.rate_limit")

# Override with TRUSTED_PROXY_CIDRS (comma-separated CIDRs).
_DEFAULT_TRUSTED_CIDRS = [
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
]


def _load_trusted_cidrs() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    raw = os.environ.get("TRUSTED_PROXY_CIDRS", "")
    cidrs = [s.strip() for s in raw.split(",") if s.strip()] if raw else _DEFAULT_TRUSTED_CIDRS
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr!r}")
    return networks


_trusted_networks: Optional[list] = None


def _get_trusted_networks():
    global _trusted_networks
    if _trusted_networks is None:
        _trusted_networks = _load_trusted_cidrs()
    return _trusted_networks


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in _get_trusted_networks())


def get_client_ip(request) -> str:
    """Resolve the client IP, honoring X-Forwarded-For only behind a trusted proxy."""
    direct_ip = get_remote_address(request)

    if _is_trusted_proxy(direct_ip):
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()
            if client_ip:
                return client_ip

    return direct_ip


def get_rate_limit_key(request) -> str:
    """Actor id when the caller identified itself, client IP otherwise."""
    actor = request.headers.get("x-actor-id")
    if actor:
        return f"actor:{actor[:128]}"
    return f"ip:{get_client_ip(request)}"


limiter = Limiter(key_func=get_rate_limit_key)
