"""In-memory authoritative zone and synthetic SOA records.

Brief:
  - Zone holds the RRsets for exactly one apex and answers lookups with the
    usual authoritative classifications (success, NODATA, NXDOMAIN,
    delegation, server failure).
  - make_soa() builds the fixed SOA record every synchronized zone carries.
"""

from __future__ import annotations

import enum
import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple

from dnslib import QTYPE, RR, SOA, DNSLabel
from dnslib.label import DNSLabelError

from .errors import AssemblyError

logger = logging.getLogger(__name__)

SOA_TTL = 3600
SOA_SERIAL = 12345
SOA_REFRESH = 7200
SOA_RETRY = 1800
SOA_EXPIRE = 86400
SOA_MINIMUM = 5

MAX_NAME_OCTETS = 255

_SUPPORTED_RTYPES = frozenset(
    int(getattr(QTYPE, name))
    for name in ("SOA", "NS", "A", "AAAA", "CNAME", "PTR", "TXT")
)

Sections = Tuple[List[RR], List[RR], List[RR], "LookupResult"]


class LookupResult(enum.Enum):
    """Brief: Classification returned by Zone.lookup()."""

    SUCCESS = "success"
    NODATA = "nodata"
    NAMEERROR = "nameerror"
    DELEGATION = "delegation"
    SERVFAIL = "servfail"


def canonical_name(name: object) -> str:
    """Brief: Normalize a DNS name to lowercase with a single trailing dot.

    Inputs:
      - name: str or dnslib DNSLabel.

    Outputs:
      - str: e.g. "www.example.org." for "WWW.Example.org".

    Example:
      >>> canonical_name("Host.Example.ORG")
      'host.example.org.'
    """
    text = str(name).strip().lower().rstrip(".")
    return text + "."


def is_valid_name(name: object) -> bool:
    """Brief: True when name can be encoded as a DNS owner name.

    Labels must be 1-63 octets and the encoded name at most 255 octets.

    Example:
      >>> is_valid_name("a.example.org.")
      True
      >>> is_valid_name("a..example.org.")
      False
    """
    try:
        label = DNSLabel(str(name))
    except (UnicodeError, DNSLabelError):
        return False
    return sum(len(part) + 1 for part in label.label) + 1 <= MAX_NAME_OCTETS


def is_subdomain(name: str, origin: str) -> bool:
    """Brief: Label-boundary test that canonical name lies at or below origin."""
    if origin == ".":
        return True
    return name == origin or name.endswith("." + origin)


def join_name(prefix: str, origin: str) -> str:
    """Brief: Prepend relative labels to a canonical origin."""
    if origin == ".":
        return prefix + "."
    return f"{prefix}.{origin}"


def make_soa(zone_name: str) -> RR:
    """Brief: Build the synthetic SOA record for a zone.

    Inputs:
      - zone_name: zone apex (trailing dot optional).

    Outputs:
      - RR: SOA at the apex with mname ``ns.dns.<zone>``, rname
        ``hostmaster.<zone>`` and constant serial/timer values.

    Example:
      >>> str(make_soa("example.org").rdata.mname)
      'ns.dns.example.org.'
    """
    origin = canonical_name(zone_name)
    return RR(
        rname=origin,
        rtype=QTYPE.SOA,
        rclass=1,
        ttl=SOA_TTL,
        rdata=SOA(
            mname=join_name("ns.dns", origin),
            rname=join_name("hostmaster", origin),
            times=(SOA_SERIAL, SOA_REFRESH, SOA_RETRY, SOA_EXPIRE, SOA_MINIMUM),
        ),
    )


class Zone:
    """Brief: Authoritative record set for a single zone apex.

    Inputs:
      - origin: zone apex; normalized with canonical_name().

    Outputs:
      - Zone instance. Build it with insert(), then treat it as read-only:
        published zones are shared between query threads.

    Example:
      >>> z = Zone("example.org.")
      >>> z.insert(make_soa("example.org."))
      >>> z.lookup("missing.example.org.", QTYPE.A)[3]
      <LookupResult.NAMEERROR: 'nameerror'>
    """

    def __init__(self, origin: str) -> None:
        self.origin = canonical_name(origin)
        self._soa: Optional[RR] = None
        # owner -> rtype -> RRset, in insertion order
        self._names: Dict[str, Dict[int, List[RR]]] = {}
        # Names that exist only because something lives below them.
        self._nonterminals: Set[str] = set()

    def __repr__(self) -> str:
        return f"Zone({self.origin!r}, names={len(self._names)})"

    def __len__(self) -> int:
        return sum(len(rrset) for rrsets in self._names.values() for rrset in rrsets.values())

    @property
    def soa(self) -> Optional[RR]:
        return self._soa

    def contains(self, name: str) -> bool:
        return is_subdomain(canonical_name(name), self.origin)

    def names(self) -> List[str]:
        return list(self._names)

    def records(self) -> Iterator[RR]:
        for rrsets in self._names.values():
            for rrset in rrsets.values():
                yield from rrset

    def insert(self, rr: RR) -> None:
        """Brief: Add one resource record to the zone.

        Inputs:
          - rr: dnslib RR of a supported type (SOA, NS, A, AAAA, CNAME, PTR,
            TXT).

        Outputs:
          - None. Identical duplicates are ignored.

        Raises:
          - AssemblyError: for a second SOA, an SOA away from the apex, an
            owner outside the zone, or an unsupported type.
        """
        owner = canonical_name(rr.rname)
        rtype = int(rr.rtype)

        if not is_subdomain(owner, self.origin):
            raise AssemblyError(f"{owner} is out of zone {self.origin}")
        if rtype not in _SUPPORTED_RTYPES:
            raise AssemblyError(
                f"unsupported record type {QTYPE.get(rtype, rtype)} at {owner}"
            )
        if rtype == QTYPE.SOA:
            if owner != self.origin:
                raise AssemblyError(f"SOA owner {owner} is not the apex of {self.origin}")
            if self._soa is not None:
                raise AssemblyError(f"zone {self.origin} already has an SOA record")
            self._soa = rr

        rrset = self._names.setdefault(owner, {}).setdefault(rtype, [])
        rdata = str(rr.rdata)
        if any(str(existing.rdata) == rdata for existing in rrset):
            return
        rrset.append(rr)

        parent = owner
        while parent != self.origin:
            parent = parent.split(".", 1)[1] or "."
            self._nonterminals.add(parent)

    def lookup(self, qname: object, qtype: int) -> Sections:
        """Brief: Answer a query name and type from this zone.

        Inputs:
          - qname: query name (any case, trailing dot optional).
          - qtype: numeric query type.

        Outputs:
          - (answer, authority, additional, LookupResult):
            - SUCCESS: answer holds the RRset (CNAME plus in-zone target
              RRset when the name is an alias).
            - NODATA: name exists (or is an empty non-terminal) without that
              type; SOA in authority.
            - NAMEERROR: name does not exist; SOA in authority.
            - DELEGATION: name is at or below an NS cut; NS in authority and
              in-zone glue in additional.
            - SERVFAIL: zone has no SOA or name is outside the zone.
        """
        name = canonical_name(qname)
        qtype = int(qtype)

        if self._soa is None or not is_subdomain(name, self.origin):
            return [], [], [], LookupResult.SERVFAIL

        cut = self._find_cut(name)
        if cut is not None:
            ns_rrs = list(self._names[cut][QTYPE.NS])
            return [], ns_rrs, self._glue(ns_rrs), LookupResult.DELEGATION

        rrsets = self._names.get(name)
        if rrsets:
            if qtype == QTYPE.ANY:
                answer = [rr for rrset in rrsets.values() for rr in rrset]
                return answer, [], [], LookupResult.SUCCESS
            if qtype in rrsets:
                return list(rrsets[qtype]), [], [], LookupResult.SUCCESS
            cname = rrsets.get(int(QTYPE.CNAME))
            if cname:
                answer = list(cname)
                target = canonical_name(cname[0].rdata.label)
                if is_subdomain(target, self.origin):
                    answer.extend(self._names.get(target, {}).get(qtype, []))
                return answer, [], [], LookupResult.SUCCESS
            return [], [self._soa], [], LookupResult.NODATA

        if name in self._nonterminals:
            return [], [self._soa], [], LookupResult.NODATA

        return [], [self._soa], [], LookupResult.NAMEERROR

    def _find_cut(self, name: str) -> Optional[str]:
        """Brief: Return the topmost non-apex owner with NS at or above name."""
        if name == self.origin:
            return None
        if self.origin == ".":
            relative = name.rstrip(".")
        else:
            relative = name[: -len(self.origin) - 1]
        labels = relative.split(".")
        for i in range(len(labels) - 1, -1, -1):
            candidate = join_name(".".join(labels[i:]), self.origin)
            rrsets = self._names.get(candidate)
            if rrsets and QTYPE.NS in rrsets:
                return candidate
        return None

    def _glue(self, ns_rrs: List[RR]) -> List[RR]:
        glue: List[RR] = []
        for ns in ns_rrs:
            target = canonical_name(ns.rdata.label)
            if not is_subdomain(target, self.origin):
                continue
            rrsets = self._names.get(target, {})
            glue.extend(rrsets.get(int(QTYPE.A), []))
            glue.extend(rrsets.get(int(QTYPE.AAAA), []))
        return glue
