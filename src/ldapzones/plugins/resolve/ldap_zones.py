"""LdapZones plugin: authoritative zones mirrored from an LDAP directory.

Brief:
  - setup() performs one synchronous fetch -> assemble -> publish cycle and
    then keeps the zones current from a background RefreshScheduler.
  - pre_resolve() answers queries for the configured zones (A/AAAA from the
    directory, PTR from the reverse table, synthetic SOA, NODATA/NXDOMAIN) or
    returns None so the next handler sees the query.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from dnslib import DNSRecord
from pydantic import BaseModel, Field, validator

from ldapzones.assembler import assemble
from ldapzones.directory import DirectorySettings, fetch_host_records
from ldapzones.plugins.resolve.base import (
    BasePlugin,
    PluginContext,
    PluginDecision,
    plugin_aliases,
)
from ldapzones.resolver import PTR_FALLBACKS, Fallthrough, QueryResolver
from ldapzones.scheduler import RefreshScheduler
from ldapzones.snapshot import SnapshotPublisher
from ldapzones.zone import canonical_name

logger = logging.getLogger(__name__)

_REVERSE_SUFFIXES = ("in-addr.arpa.", "ip6.arpa.")


def is_reverse_zone(name: str) -> bool:
    """Brief: True for names at or below in-addr.arpa. or ip6.arpa."""
    text = canonical_name(name)
    return any(text == s or text.endswith("." + s) for s in _REVERSE_SUFFIXES)


class LdapAttributesConfig(BaseModel):
    """Brief: Directory attribute names carrying host data.

    Inputs:
      - fqdn: attribute holding the host name (required).
      - ip4: attribute holding IPv4 addresses (optional).
      - ip6: attribute holding IPv6 addresses (optional).

    Outputs:
      - LdapAttributesConfig; at least one of ip4/ip6 is set.
    """

    fqdn: str = Field(...)
    ip4: Optional[str] = Field(default=None)
    ip6: Optional[str] = Field(default=None)

    @validator("fqdn", "ip4", "ip6", pre=True)
    def _strip(cls, v: object) -> Optional[str]:  # type: ignore[override]
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @validator("ip6", always=True)
    def _need_address_attr(cls, v: Optional[str], values: dict) -> Optional[str]:  # type: ignore[override]
        if v is None and values.get("ip4") is None:
            raise ValueError("attributes: at least one of ip4 or ip6 is required")
        return v


class LdapZonesConfig(BaseModel):
    """Brief: Typed configuration model for the LdapZones plugin.

    Inputs:
      - zones: zone apexes served by this plugin; at least one must be a
        forward (non in-addr.arpa/ip6.arpa) zone.
      - ldap_url: directory URL, e.g. "ldap://ldap.example.org".
      - base_dn: search base.
      - filter: search filter (default "(objectClass=*)").
      - username / password: simple bind credentials (optional).
      - sasl: bind with SASL EXTERNAL; cannot be combined with credentials.
      - start_tls: issue StartTLS before binding.
      - attributes: LdapAttributesConfig.
      - paging_limit: entries per search page (1..10000, default 500).
      - sync_interval: seconds between refreshes; 0 disables the loop.
      - ttl: TTL of A/AAAA answers (0..3600, default 3600).
      - fallthrough: None disables; [] passes every unanswered name on; a list
        limits fallthrough to names under the listed zones.
      - ptr_fallback: "echo" (default) or "nxdomain" for unknown reverse names.
      - timeout: LDAP network/operation timeout in seconds.

    Outputs:
      - LdapZonesConfig instance with normalized zone names.
    """

    zones: List[str] = Field(...)
    ldap_url: str = Field(...)
    base_dn: str = Field(...)
    filter: str = Field(default="(objectClass=*)")
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    sasl: bool = Field(default=False)
    start_tls: bool = Field(default=False)
    attributes: LdapAttributesConfig
    paging_limit: int = Field(default=500, ge=1, le=10000)
    sync_interval: float = Field(default=60.0, ge=0)
    ttl: int = Field(default=3600, ge=0, le=3600)
    fallthrough: Optional[List[str]] = Field(default=None)
    ptr_fallback: str = Field(default="echo")
    timeout: float = Field(default=10.0, gt=0)

    class Config:
        extra = "allow"

    @validator("zones", pre=True)
    def _normalize_zones(cls, v: object) -> List[str]:  # type: ignore[override]
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, (list, tuple)):
            raise ValueError("zones must be a list of zone names")
        zones = [canonical_name(z) for z in v if str(z or "").strip()]
        if not zones:
            raise ValueError("zones must name at least one zone")
        if all(is_reverse_zone(z) for z in zones):
            raise ValueError("zones must include at least one forward zone")
        return zones

    @validator("ldap_url", "base_dn", pre=True)
    def _required_text(cls, v: object) -> str:  # type: ignore[override]
        text = str(v or "").strip()
        if not text:
            raise ValueError("must be a non-empty string")
        return text

    @validator("sasl", always=True)
    def _sasl_excludes_credentials(cls, v: bool, values: dict) -> bool:  # type: ignore[override]
        if v and (values.get("username") or values.get("password")):
            raise ValueError("sasl cannot be combined with username/password")
        return v

    @validator("fallthrough", pre=True)
    def _normalize_fallthrough(cls, v: object) -> Optional[List[str]]:  # type: ignore[override]
        if v is None or v is False:
            return None
        if v is True:
            return []
        if isinstance(v, str):
            v = [v]
        return [canonical_name(z) for z in v if str(z or "").strip()]  # type: ignore[union-attr]

    @validator("ptr_fallback", pre=True)
    def _normalize_ptr_fallback(cls, v: object) -> str:  # type: ignore[override]
        text = str(v or "echo").strip().lower()
        if text not in PTR_FALLBACKS:
            raise ValueError(f"ptr_fallback must be one of {', '.join(PTR_FALLBACKS)}")
        return text


@plugin_aliases("ldap", "ldap_zones", "ldap-zones")
class LdapZones(BasePlugin):
    """Brief: Serve authoritative zones built from LDAP host entries.

    Inputs:
      - name: Optional plugin instance name.
      - **config: LdapZonesConfig fields plus BasePlugin options. A
        `client_factory` callable may be supplied (used by tests) to replace
        the python-ldap client.

    Outputs:
      - LdapZones instance; call setup() before use.
    """

    # Runs ahead of generic plugins so authoritative answers are not shadowed.
    pre_priority = 50
    setup_priority = 50

    @classmethod
    def get_config_model(cls):
        """Brief: Return LdapZonesConfig for the core config loader."""
        return LdapZonesConfig

    def setup(self) -> None:
        """Brief: Build the snapshot pipeline and run the initial refresh.

        Outputs:
          - None

        Raises:
          - DirectoryError / AssemblyError from the initial refresh; a plugin
            that cannot load its zones once must not start serving.
        """
        raw = {k: v for k, v in self.config.items() if k != "client_factory"}
        cfg = LdapZonesConfig(**raw)
        self._cfg = cfg
        self._client_factory: Optional[Callable] = self.config.get("client_factory")  # type: ignore[assignment]

        attrs = cfg.attributes
        self._settings = DirectorySettings(
            url=cfg.ldap_url,
            base_dn=cfg.base_dn,
            search_filter=cfg.filter,
            fqdn_attr=attrs.fqdn,
            ip4_attr=attrs.ip4,
            ip6_attr=attrs.ip6,
            page_size=cfg.paging_limit,
            bind_dn=cfg.username,
            bind_password=cfg.password,
            sasl=cfg.sasl,
            start_tls=cfg.start_tls,
            timeout=cfg.timeout,
        )
        self.zone_names: List[str] = list(cfg.zones)
        self.publisher = SnapshotPublisher()
        self.resolver = QueryResolver(
            self.zone_names,
            self.publisher,
            fallthrough=Fallthrough(cfg.fallthrough),
            ptr_fallback=cfg.ptr_fallback,
        )
        self.scheduler = RefreshScheduler(
            self.sync,
            cfg.sync_interval,
            name=f"LdapZones[{self.name}]",
        )
        self.scheduler.start()

    def sync(self) -> int:
        """Brief: Run one fetch -> assemble -> publish cycle.

        Outputs:
          - int: generation number of the new snapshot.

        Raises:
          - DirectoryError or AssemblyError; nothing is published in that case.
        """
        started = time.monotonic()
        records = fetch_host_records(self._settings, client_factory=self._client_factory)
        zone_set = assemble(self.zone_names, records, self._cfg.ttl)
        generation = self.publisher.publish(zone_set)
        self.logger.info(
            "LdapZones %s: published generation %d: %d zones, %d records, %d reverse entries from %d hosts in %.2fs",
            self.name,
            generation,
            len(zone_set.zones),
            zone_set.record_count(),
            len(zone_set.reverse),
            len(records),
            time.monotonic() - started,
        )
        return generation

    def pre_resolve(
        self, qname: str, qtype: int, req: bytes, ctx: PluginContext
    ) -> Optional[PluginDecision]:
        """Brief: Answer queries for the configured zones.

        Inputs:
          - qname: The queried domain name.
          - qtype: DNS query type.
          - req: Raw DNS request wire bytes.
          - ctx: PluginContext for the client request.

        Outputs:
          - PluginDecision("override") carrying the reply, or None when the
            name is outside every zone or fallthrough applies.
        """
        if not self.targets(ctx):
            return None
        resolver = getattr(self, "resolver", None)
        if resolver is None:
            return None

        try:
            request = DNSRecord.parse(req)
        except Exception as exc:
            self.logger.warning("LdapZones: parse failure for %s: %s", qname, exc)
            return None

        reply = resolver.resolve(qname, qtype, request)
        if reply is None:
            return None
        return PluginDecision(action="override", response=reply.pack(), plugin_label=self.name)

    def handle_sigusr2(self) -> None:
        """Brief: Refresh from the directory immediately."""
        scheduler = getattr(self, "scheduler", None)
        if scheduler is not None:
            self.logger.info("LdapZones %s: SIGUSR2 received; refreshing", self.name)
            scheduler.refresh_now()

    def close(self) -> None:
        scheduler = getattr(self, "scheduler", None)
        if scheduler is not None:
            logger.debug("LdapZones %s: stopping refresh scheduler", self.name)
            scheduler.stop()
