"""Synchronous input validators shared by manifests and services.

Each validator raises ``ValueError`` with a user-facing message so it can be
used directly from pydantic field validators; services wrap the message in
:class:`matlas.errors.ValidationError` before any network call.
"""

from __future__ import annotations

import ipaddress
import re

from .errors import ValidationError

VALID_PROVIDERS = ("AWS", "GCP", "AZURE")

# Provider-specific container CIDR prefix-length bounds (inclusive)
CONTAINER_PREFIX_BOUNDS: dict[str, tuple[int, int]] = {
    "AWS": (16, 24),
    "GCP": (16, 29),
    "AZURE": (16, 24),
}

CLUSTER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,64}$")
OBJECT_ID_PATTERN = re.compile(r"^[0-9a-f]{24}$")


def validate_provider(provider: str) -> str:
    value = (provider or "").upper()
    if value not in VALID_PROVIDERS:
        raise ValueError(f"provider must be one of {list(VALID_PROVIDERS)}: {provider!r}")
    return value


def validate_ip_address(value: str) -> str:
    try:
        ipaddress.ip_address(value)
    except ValueError as e:
        raise ValueError(f"invalid IP address: {value!r}") from e
    return value


def validate_cidr(value: str) -> str:
    if "/" not in value:
        raise ValueError(f"CIDR block must be in CIDR notation (e.g. 10.0.0.0/24): {value!r}")
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise ValueError(f"invalid CIDR block: {value!r}") from e
    return value


def validate_container_cidr(provider: str, cidr: str) -> str:
    """Check a network-container CIDR against the provider's prefix bounds."""
    validate_cidr(cidr)
    network = ipaddress.ip_network(cidr, strict=False)
    if network.version != 4:
        raise ValueError(f"container CIDR must be IPv4: {cidr!r}")
    low, high = CONTAINER_PREFIX_BOUNDS[validate_provider(provider)]
    if not (low <= network.prefixlen <= high):
        raise ValueError(
            f"{provider} container CIDR prefix must be between /{low} and /{high}: {cidr!r}"
        )
    return cidr


def validate_aws_region(region: str) -> str:
    if not region or "-" not in region:
        raise ValueError(f"AWS region must look like 'us-east-1': {region!r}")
    return region


def validate_cluster_name(name: str) -> str:
    if not CLUSTER_NAME_PATTERN.match(name or ""):
        raise ValueError(
            f"cluster name must be 1-64 characters of letters, digits and '-': {name!r}"
        )
    return name


def cidrs_overlap(first: str, second: str) -> bool:
    a = ipaddress.ip_network(first, strict=False)
    b = ipaddress.ip_network(second, strict=False)
    if a.version != b.version:
        return False
    return a.overlaps(b)


def require(**values: str | None) -> None:
    """Raise ValidationError naming the first empty identifying argument."""
    for name, value in values.items():
        if not value:
            raise ValidationError(f"{name} is required")


def check(validator, *args: str) -> None:
    """Run a ValueError-style validator, re-raising as ValidationError."""
    try:
        validator(*args)
    except ValueError as e:
        raise ValidationError(str(e)) from e
