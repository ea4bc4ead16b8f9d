"""Compute Engine resource URL patterns and helpers.

Partial URLs (``zones/z/disks/d``) are qualified with a project
(``projects/p/zones/z/disks/d``); absolute API URLs are reduced to the
same relative form before matching.
"""

from __future__ import annotations

import re

API_PREFIXES = (
    "https://www.googleapis.com/compute/v1/",
    "https://compute.googleapis.com/compute/v1/",
)

_PROJECT = r"[a-z]([-.:a-z0-9]*[a-z0-9])?"
_NAME = r"[a-z]([-a-z0-9]*[a-z0-9])?"
_PROJECT_PREFIX = rf"^(projects/(?P<project>{_PROJECT})/)?"

RFC1035 = re.compile(rf"^{_NAME}$")

DISK_URL = re.compile(
    rf"{_PROJECT_PREFIX}zones/(?P<zone>{_NAME})/disks/(?P<disk>{_NAME})$",
)
DISK_TYPE_URL = re.compile(
    rf"{_PROJECT_PREFIX}zones/(?P<zone>{_NAME})/diskTypes/(?P<disktype>{_NAME})$",
)
IMAGE_URL = re.compile(
    rf"{_PROJECT_PREFIX}global/images/((family/(?P<family>{_NAME}))|(?P<image>{_NAME}))$",
)
INSTANCE_URL = re.compile(
    rf"{_PROJECT_PREFIX}zones/(?P<zone>{_NAME})/instances/(?P<instance>{_NAME})$",
)
MACHINE_TYPE_URL = re.compile(
    rf"{_PROJECT_PREFIX}zones/(?P<zone>{_NAME})/machineTypes/(?P<machinetype>{_NAME})$",
)
NETWORK_URL = re.compile(
    rf"{_PROJECT_PREFIX}global/networks/(?P<network>{_NAME})$",
)

DISK_MODES = frozenset({"READ_WRITE", "READ_ONLY"})


def strip_api_prefix(url: str) -> str:
    """Reduce an absolute Compute API URL to its ``projects/...`` path."""
    for prefix in API_PREFIXES:
        if url.startswith(prefix):
            return url.removeprefix(prefix)
    return url


def extend_partial_url(url: str, project: str) -> str:
    """Qualify a partial resource URL with ``projects/<project>/``."""
    url = strip_api_prefix(url)
    if url.startswith("projects/"):
        return url
    return f"projects/{project}/{url}"


def named_groups(pattern: re.Pattern[str], url: str) -> dict[str, str]:
    """Named subexpressions of ``pattern`` in ``url``; empty if it does not match."""
    match = pattern.match(strip_api_prefix(url))
    if match is None:
        return {}
    return {k: v or "" for k, v in match.groupdict().items()}


def check_name(name: str) -> bool:
    return len(name) <= 63 and RFC1035.match(name) is not None


def check_disk_mode(mode: str) -> bool:
    return mode in DISK_MODES


def disk_link(project: str, zone: str, name: str) -> str:
    return f"projects/{project}/zones/{zone}/disks/{name}"


def instance_link(project: str, zone: str, name: str) -> str:
    return f"projects/{project}/zones/{zone}/instances/{name}"
