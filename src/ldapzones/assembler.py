"""Zone assembler: turn one fetch cycle's host records into zone snapshots.

Brief:
  - match_zone() picks the owning zone for a name (longest label suffix,
    first configured entry on ties). The query resolver uses the same rule.
  - assemble() builds a fresh Zone per configured apex with its synthetic SOA
    and A/AAAA records, plus the reverse (PTR) table, as one immutable ZoneSet.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

from dnslib import AAAA, QTYPE, RR, A

from .directory import HostRecord
from .zone import Zone, canonical_name, is_subdomain, is_valid_name, make_soa

logger = logging.getLogger(__name__)


def match_zone(name: object, zones: Sequence[str]) -> Optional[str]:
    """Brief: Find the configured zone that owns a name.

    Inputs:
      - name: DNS name (any case, trailing dot optional).
      - zones: configured zone apexes in configuration order.

    Outputs:
      - Canonical apex of the longest matching zone, or None. When the same
        apex is listed more than once the first entry wins.

    Example:
      >>> match_zone("h.sample.example.org", ["example.org.", "sample.example.org."])
      'sample.example.org.'
      >>> match_zone("example.com.", ["example.org."]) is None
      True
    """
    target = canonical_name(name)
    best: Optional[str] = None
    for zone in zones:
        origin = canonical_name(zone)
        if not is_subdomain(target, origin):
            continue
        if best is None or len(origin) > len(best):
            best = origin
    return best


def reverse_name(address: Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]) -> str:
    """Brief: in-addr.arpa / ip6.arpa owner name for an address.

    Example:
      >>> reverse_name("1.2.3.4")
      '4.3.2.1.in-addr.arpa.'
    """
    return ipaddress.ip_address(str(address)).reverse_pointer.lower() + "."


@dataclass(frozen=True)
class ZoneSet:
    """Brief: The unit of publication: every zone plus the reverse table.

    Inputs (constructor fields):
      - zones: apex -> Zone.
      - reverse: reverse owner name -> fqdn.

    Outputs:
      - Immutable ZoneSet; both mappings are read-only views.
    """

    zones: Mapping[str, Zone] = field(default_factory=lambda: MappingProxyType({}))
    reverse: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def record_count(self) -> int:
        return sum(len(zone) for zone in self.zones.values())


def assemble(zone_names: Sequence[str], records: Iterable[HostRecord], ttl: int) -> ZoneSet:
    """Brief: Build a complete ZoneSet from one cycle's host records.

    Inputs:
      - zone_names: configured apexes; duplicates collapse to one zone.
      - records: HostRecords from fetch_host_records().
      - ttl: TTL for every A/AAAA record.

    Outputs:
      - ZoneSet with one Zone per apex (each holding exactly one SOA) and the
        reverse table. Records outside every zone are dropped; hosts without
        any address contribute no records. Hosts whose name is not a valid
        DNS name (empty or over-long labels) are skipped entirely.

    Raises:
      - AssemblyError: only when a zone invariant is violated.

    Notes:
      - The reverse entry for a host is keyed by its IPv6 address when it has
        one, else by its IPv4 address. Later hosts overwrite earlier ones.
    """
    origins = list(dict.fromkeys(canonical_name(z) for z in zone_names))

    zones: Dict[str, Zone] = {}
    for origin in origins:
        zone = Zone(origin)
        zone.insert(make_soa(origin))
        zones[origin] = zone

    reverse: Dict[str, str] = {}
    dropped = 0
    invalid = 0
    for record in records:
        if not is_valid_name(record.fqdn):
            invalid += 1
            logger.debug("Skipping %r: not a valid DNS name", record.fqdn)
            continue

        address = record.ipv6 if record.ipv6 is not None else record.ipv4
        if address is not None:
            reverse[reverse_name(address)] = record.fqdn

        origin = match_zone(record.fqdn, origins)
        if origin is None:
            dropped += 1
            logger.debug("No configured zone for %s; dropping", record.fqdn)
            continue

        zone = zones[origin]
        if record.ipv4 is not None:
            zone.insert(
                RR(
                    rname=record.fqdn,
                    rtype=QTYPE.A,
                    rclass=1,
                    ttl=int(ttl),
                    rdata=A(str(record.ipv4)),
                )
            )
        if record.ipv6 is not None:
            zone.insert(
                RR(
                    rname=record.fqdn,
                    rtype=QTYPE.AAAA,
                    rclass=1,
                    ttl=int(ttl),
                    rdata=AAAA(str(record.ipv6)),
                )
            )

    if dropped:
        logger.debug("%d host records matched no configured zone", dropped)
    if invalid:
        logger.info("Skipped %d host records with invalid DNS names", invalid)

    return ZoneSet(zones=MappingProxyType(zones), reverse=MappingProxyType(reverse))
