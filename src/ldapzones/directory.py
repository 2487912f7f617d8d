"""Directory record fetcher: one paged LDAP search decoded into host records.

Brief:
  - LdapDirectoryClient wraps a python-ldap connection (bind, StartTLS, SASL
    EXTERNAL, paged subtree search).
  - fetch_host_records() performs a complete fetch cycle and either returns
    every decoded HostRecord or raises DirectoryError; partial results are
    never returned.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import (
    Callable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

try:  # python-ldap is optional at import time; connect() reports it missing.
    import ldap
    import ldap.sasl
    from ldap.controls import SimplePagedResultsControl
except ImportError:  # pragma: no cover - python-ldap not installed
    ldap = None  # type: ignore[assignment]
    SimplePagedResultsControl = None  # type: ignore[assignment,misc]

from .errors import DirectoryError
from .zone import canonical_name

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
# (dn, {attribute: [value, ...]}) as returned by python-ldap
Entry = Tuple[str, Mapping[str, Sequence[Union[bytes, str]]]]


@dataclass(frozen=True)
class HostRecord:
    """Brief: One host decoded from a directory entry.

    Inputs (constructor fields):
      - fqdn: absolute, lowercased owner name (always dot-terminated).
      - ipv4: IPv4Address or None.
      - ipv6: IPv6Address or None.

    Outputs:
      - Immutable HostRecord; lives for a single refresh cycle.
    """

    fqdn: str
    ipv4: Optional[ipaddress.IPv4Address] = None
    ipv6: Optional[ipaddress.IPv6Address] = None


@dataclass(frozen=True)
class DirectorySettings:
    """Brief: Connection and search parameters for one fetch cycle.

    Inputs (constructor fields):
      - url: LDAP URL, e.g. "ldaps://ldap.example.org".
      - base_dn: search base.
      - search_filter: RFC 4515 filter string.
      - fqdn_attr / ip4_attr / ip6_attr: attribute names carrying the host
        name and addresses. ip4_attr/ip6_attr may be None.
      - page_size: entries per page for the paged-results control.
      - bind_dn / bind_password: simple bind credentials (optional).
      - sasl: bind with SASL EXTERNAL instead of credentials.
      - start_tls: issue StartTLS before binding.
      - timeout: network and operation timeout in seconds.
    """

    url: str
    base_dn: str
    search_filter: str = "(objectClass=*)"
    fqdn_attr: str = "aeFqdn"
    ip4_attr: Optional[str] = "ipHostNumber"
    ip6_attr: Optional[str] = None
    page_size: int = 500
    bind_dn: Optional[str] = None
    bind_password: Optional[str] = None
    sasl: bool = False
    start_tls: bool = False
    timeout: float = 10.0

    def attributes(self) -> List[str]:
        """Brief: Attribute names requested from the directory (no duplicates)."""
        names = [self.fqdn_attr, self.ip4_attr, self.ip6_attr]
        return list(dict.fromkeys(n for n in names if n))


def normalize_fqdn(value: str) -> str:
    """Brief: Make a directory host name absolute.

    Example:
      >>> normalize_fqdn(" Host2.Example.org ")
      'host2.example.org.'
    """
    return canonical_name(value)


def parse_address(value: Optional[str], version: int) -> Optional[IPAddress]:
    """Brief: Parse an attribute value as an IP address of one version.

    Inputs:
      - value: raw attribute text (may be None or empty).
      - version: 4 or 6.

    Outputs:
      - ipaddress object, or None when the text is not an address of that
        version. Unparseable values are not errors.
    """
    if not value:
        return None
    try:
        addr = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if addr.version != version:
        return None
    return addr


def _decode(value: Union[bytes, str]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _values(attrs: Mapping[str, Sequence[Union[bytes, str]]], name: str) -> List[str]:
    # Attribute names are case-insensitive in LDAP.
    wanted = name.lower()
    for key, values in attrs.items():
        if key.lower() == wanted:
            return [_decode(v) for v in values]
    return []


def entry_to_record(
    dn: str, attrs: Mapping[str, Sequence[Union[bytes, str]]], settings: DirectorySettings
) -> Optional[HostRecord]:
    """Brief: Decode one directory entry into a HostRecord.

    Inputs:
      - dn: entry DN (used for logging only).
      - attrs: attribute mapping from python-ldap.
      - settings: DirectorySettings naming the fqdn/ip4/ip6 attributes.

    Outputs:
      - HostRecord, or None when the entry carries no host name.

    Notes:
      - The first value of the fqdn attribute is used.
      - For addresses, the first value that parses as the right IP version is
        used, so a single multi-valued attribute may feed both A and AAAA.
    """
    names = [v.strip() for v in _values(attrs, settings.fqdn_attr) if v.strip()]
    if not names:
        logger.debug("Skipping %s: no %s value", dn, settings.fqdn_attr)
        return None

    ipv4 = None
    if settings.ip4_attr:
        for raw in _values(attrs, settings.ip4_attr):
            ipv4 = parse_address(raw, 4)
            if ipv4 is not None:
                break

    ipv6 = None
    if settings.ip6_attr:
        for raw in _values(attrs, settings.ip6_attr):
            ipv6 = parse_address(raw, 6)
            if ipv6 is not None:
                break

    return HostRecord(fqdn=normalize_fqdn(names[0]), ipv4=ipv4, ipv6=ipv6)  # type: ignore[arg-type]


def _describe(exc: Exception) -> str:
    """Brief: Render a python-ldap error as "desc: info" text."""
    info = exc.args[0] if exc.args else None
    if isinstance(info, dict):
        desc = str(info.get("desc", "")) or exc.__class__.__name__
        extra = info.get("info")
        return f"{desc}: {extra}" if extra else desc
    return str(exc) or exc.__class__.__name__


class LdapDirectoryClient:
    """Brief: Thin python-ldap client used by fetch_host_records().

    Inputs:
      - conn: bound python-ldap LDAPObject.

    Outputs:
      - Client exposing search_paged() and close().

    Example:
      >>> client = LdapDirectoryClient.connect(settings)  # doctest: +SKIP
      >>> entries = client.search_paged("ou=hosts", "(objectClass=*)", ["cn"], 500)  # doctest: +SKIP
    """

    def __init__(self, conn: object) -> None:
        self._conn = conn

    @classmethod
    def connect(cls, settings: DirectorySettings) -> "LdapDirectoryClient":
        """Brief: Open a connection and bind according to settings.

        Raises:
          - DirectoryError: when python-ldap is missing, the server is
            unreachable, StartTLS fails, or the bind is rejected.
        """
        if ldap is None:
            raise DirectoryError("python-ldap is not installed")

        try:
            conn = ldap.initialize(settings.url)
            conn.protocol_version = ldap.VERSION3
            conn.set_option(ldap.OPT_REFERRALS, 0)
            conn.set_option(ldap.OPT_NETWORK_TIMEOUT, float(settings.timeout))
            conn.set_option(ldap.OPT_TIMEOUT, float(settings.timeout))
            if settings.start_tls:
                conn.start_tls_s()
            if settings.sasl:
                conn.sasl_interactive_bind_s("", ldap.sasl.external())
            elif settings.bind_dn:
                conn.simple_bind_s(settings.bind_dn, settings.bind_password or "")
            else:
                conn.simple_bind_s("", "")
        except ldap.LDAPError as exc:
            raise DirectoryError(
                f"connecting to {settings.url}: {_describe(exc)}"
            ) from exc

        logger.debug("Bound to %s", settings.url)
        return cls(conn)

    def search_paged(
        self,
        base_dn: str,
        search_filter: str,
        attributes: Iterable[str],
        page_size: int,
    ) -> List[Entry]:
        """Brief: Run a subtree search with the paged-results control.

        Inputs:
          - base_dn, search_filter, attributes: search parameters.
          - page_size: entries requested per page.

        Outputs:
          - list of (dn, attrs) for every page; referrals are skipped.

        Raises:
          - DirectoryError: when any page fails. Entries already received are
            discarded with the exception.
        """
        control = SimplePagedResultsControl(True, size=int(page_size), cookie="")
        entries: List[Entry] = []
        pages = 0
        try:
            while True:
                msgid = self._conn.search_ext(  # type: ignore[attr-defined]
                    base_dn,
                    ldap.SCOPE_SUBTREE,
                    search_filter,
                    list(attributes),
                    serverctrls=[control],
                )
                _rtype, rdata, _rmsgid, serverctrls = self._conn.result3(msgid)  # type: ignore[attr-defined]
                pages += 1
                entries.extend((dn, attrs) for dn, attrs in rdata if dn)

                cookie = None
                for ctrl in serverctrls or []:
                    if ctrl.controlType == SimplePagedResultsControl.controlType:
                        cookie = ctrl.cookie
                        break
                if not cookie:
                    break
                control.cookie = cookie
        except ldap.LDAPError as exc:
            raise DirectoryError(
                f"searching {base_dn} (page {pages + 1}): {_describe(exc)}"
            ) from exc

        logger.debug("Fetched %d entries in %d page(s)", len(entries), pages)
        return entries

    def close(self) -> None:
        try:
            self._conn.unbind_s()  # type: ignore[attr-defined]
        except ldap.LDAPError as exc:
            logger.debug("Ignoring unbind failure: %s", _describe(exc))


ClientFactory = Callable[[DirectorySettings], object]


def fetch_host_records(
    settings: DirectorySettings, client_factory: Optional[ClientFactory] = None
) -> List[HostRecord]:
    """Brief: Fetch and decode every host record from the directory.

    Inputs:
      - settings: DirectorySettings for the connection and search.
      - client_factory: optional callable returning an object with
        search_paged() and close(); defaults to LdapDirectoryClient.connect.

    Outputs:
      - list[HostRecord] in directory order.

    Raises:
      - DirectoryError: connection, bind, or any page of the search failed.
        Nothing fetched so far is returned.
    """
    factory = client_factory or LdapDirectoryClient.connect
    client = factory(settings)
    try:
        entries = client.search_paged(  # type: ignore[attr-defined]
            settings.base_dn,
            settings.search_filter,
            settings.attributes(),
            settings.page_size,
        )
    finally:
        client.close()  # type: ignore[attr-defined]

    records: List[HostRecord] = []
    skipped = 0
    for dn, attrs in entries:
        record = entry_to_record(dn, attrs, settings)
        if record is None:
            skipped += 1
            continue
        records.append(record)

    if skipped:
        logger.info("Skipped %d directory entries without a host name", skipped)
    return records
