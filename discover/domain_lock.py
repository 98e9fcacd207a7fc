"""Host trust ranking and the discover domain lock."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence
from urllib.parse import urlparse

LOCK_TRUST_THRESHOLD = 0.7


@dataclass
class DomainLockResult:
    locked: bool
    locked_hosts: List[str] = field(default_factory=list)
    host_switches: int = 0


def safe_host(url: str) -> str:
    try:
        return (urlparse(str(url or "")).hostname or "").lower()
    except ValueError:
        return ""


def host_trust(host: str, official_domains: Sequence[str]) -> float:
    """1.0 official (or subdomain), 0.9 ``.lg.jp``/``.go.jp``, 0.7 data portals, else 0.2."""
    if not host:
        return 0.0
    if any(host == domain or host.endswith(f".{domain}") for domain in official_domains):
        return 1.0
    if host.endswith(".lg.jp") or host.endswith(".go.jp"):
        return 0.9
    if "opendata" in host or "data" in host:
        return 0.7
    return 0.2


def compute_domain_lock(urls: Iterable[str], official_domains: Sequence[str], max_host_switches: int) -> DomainLockResult:
    """
    Lock onto the most trusted, most frequent hosts.

    Hosts are ranked by ``trust * 10 + count``; those with trust >= 0.7 are
    locked, at most ``max(1, max_host_switches)`` of them.
    """
    hosts = [safe_host(url) for url in urls]
    counts = Counter(host for host in hosts if host)
    ranked = sorted(
        counts.items(),
        key=lambda item: host_trust(item[0], official_domains) * 10 + item[1],
        reverse=True,
    )
    locked_hosts = [
        host for host, _ in ranked if host_trust(host, official_domains) >= LOCK_TRUST_THRESHOLD
    ][: max(1, max_host_switches)]
    return DomainLockResult(
        locked=bool(locked_hosts),
        locked_hosts=locked_hosts,
        host_switches=max(0, len(counts) - 1),
    )
