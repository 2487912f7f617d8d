"""Query resolver over the published zone snapshot.

Brief:
  - Matches a query to a configured zone, answers PTR from the reverse table
    and everything else from the zone, maps the lookup classification to an
    rcode, and decides whether to hand the query to the next handler.
  - resolve() returns a reply DNSRecord or None ("next handler"); never both.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Sequence

from dnslib import PTR, QTYPE, RCODE, RR, DNSHeader, DNSRecord

from .assembler import ZoneSet, match_zone
from .errors import ZoneNotReady
from .snapshot import SnapshotPublisher
from .zone import LookupResult, Sections, Zone, canonical_name

logger = logging.getLogger(__name__)

PTR_FALLBACK_ECHO = "echo"
PTR_FALLBACK_NXDOMAIN = "nxdomain"
PTR_FALLBACKS = (PTR_FALLBACK_ECHO, PTR_FALLBACK_NXDOMAIN)


class Fallthrough:
    """Brief: Which names may be passed to the next handler when unanswered.

    Inputs:
      - zones: None disables fallthrough; an empty list enables it for every
        name; otherwise only names at or below a listed zone.

    Outputs:
      - Fallthrough instance.

    Example:
      >>> Fallthrough(None).through("a.example.org.")
      False
      >>> Fallthrough([]).through("a.example.org.")
      True
      >>> Fallthrough(["example.com."]).through("a.example.org.")
      False
    """

    def __init__(self, zones: Optional[Iterable[str]] = None) -> None:
        self.enabled = zones is not None
        self.zones: List[str] = [canonical_name(z) for z in (zones or [])]

    def through(self, name: object) -> bool:
        if not self.enabled:
            return False
        if not self.zones:
            return True
        return match_zone(name, self.zones) is not None


class QueryResolver:
    """Brief: Answer queries for the configured zones from a SnapshotPublisher.

    Inputs:
      - zone_names: configured zone apexes (same list the assembler used).
      - publisher: SnapshotPublisher holding the live ZoneSet.
      - fallthrough: Fallthrough policy (default: disabled).
      - ptr_fallback: "echo" answers an unknown reverse name with itself;
        "nxdomain" answers NXDOMAIN.
      - ptr_ttl: TTL on PTR answers.

    Outputs:
      - QueryResolver instance; safe to share between query threads.
    """

    def __init__(
        self,
        zone_names: Sequence[str],
        publisher: SnapshotPublisher,
        fallthrough: Optional[Fallthrough] = None,
        ptr_fallback: str = PTR_FALLBACK_ECHO,
        ptr_ttl: int = 3600,
    ) -> None:
        if ptr_fallback not in PTR_FALLBACKS:
            raise ValueError(f"ptr_fallback must be one of {PTR_FALLBACKS}, got {ptr_fallback!r}")
        self.zone_names = [canonical_name(z) for z in zone_names]
        self._publisher = publisher
        self._fallthrough = fallthrough or Fallthrough(None)
        self._ptr_fallback = ptr_fallback
        self._ptr_ttl = int(ptr_ttl)

    def resolve(self, qname: object, qtype: int, request: DNSRecord) -> Optional[DNSRecord]:
        """Brief: Resolve one query.

        Inputs:
          - qname: query name.
          - qtype: numeric query type.
          - request: parsed request (used for the reply header and question).

        Outputs:
          - DNSRecord reply, or None when the query belongs to the next
            handler (no matching zone, or fallthrough applies).
        """
        name = canonical_name(qname)
        qtype = int(qtype)

        origin = match_zone(name, self.zone_names)
        if origin is None:
            return None

        try:
            with self._publisher.read() as live:
                zone = self._zone_from(live, origin)
                if qtype == QTYPE.PTR:
                    sections = self._lookup_ptr(request, zone, live.reverse)  # type: ignore[union-attr]
                else:
                    sections = zone.lookup(name, qtype)
        except ZoneNotReady as exc:
            logger.debug("%s; SERVFAIL for %s", exc, name)
            return self._servfail(request)

        answer, authority, additional, result = sections

        if (
            not answer
            and result is not LookupResult.NODATA
            and self._fallthrough.through(name)
        ):
            logger.debug("Falling through for %s %s (%s)", name, QTYPE.get(qtype, qtype), result.value)
            return None

        if result is LookupResult.SERVFAIL:
            return self._servfail(request)

        reply = DNSRecord(
            DNSHeader(id=request.header.id, qr=1, aa=1, ra=1), q=request.q
        )
        if result is LookupResult.NAMEERROR:
            reply.header.rcode = RCODE.NXDOMAIN
        elif result is LookupResult.DELEGATION:
            reply.header.aa = 0

        for rr in answer:
            reply.add_answer(rr)
        for rr in authority:
            reply.add_auth(rr)
        for rr in additional:
            reply.add_ar(rr)
        return reply

    @staticmethod
    def _zone_from(live: Optional[ZoneSet], origin: str) -> Zone:
        zone = live.zones.get(origin) if live is not None else None
        if zone is None:
            raise ZoneNotReady(origin)
        return zone

    def _lookup_ptr(self, request: DNSRecord, zone: Zone, reverse: Mapping[str, str]) -> Sections:
        owner = request.q.qname
        target = reverse.get(canonical_name(owner))
        if target is None:
            if self._ptr_fallback == PTR_FALLBACK_NXDOMAIN:
                authority = [zone.soa] if zone.soa is not None else []
                return [], authority, [], LookupResult.NAMEERROR
            target = str(owner)
        rr = RR(
            rname=owner,
            rtype=QTYPE.PTR,
            rclass=1,
            ttl=self._ptr_ttl,
            rdata=PTR(target),
        )
        return [rr], [], [], LookupResult.SUCCESS

    @staticmethod
    def _servfail(request: DNSRecord) -> DNSRecord:
        reply = DNSRecord(
            DNSHeader(id=request.header.id, qr=1, aa=0, ra=1, rcode=RCODE.SERVFAIL),
            q=request.q,
        )
        return reply
