import ipaddress

import pytest

import ldapzones.directory as directory_mod
from ldapzones.directory import (
    DirectorySettings,
    HostRecord,
    LdapDirectoryClient,
    entry_to_record,
    fetch_host_records,
    normalize_fqdn,
    parse_address,
)
from ldapzones.errors import DirectoryError


@pytest.fixture
def settings():
    return DirectorySettings(
        url="ldap://ldap.example.org",
        base_dn="ou=hosts,dc=example,dc=org",
        search_filter="(objectClass=ipHost)",
        fqdn_attr="aeFqdn",
        ip4_attr="ipHostNumber",
        ip6_attr="ipv6HostNumber",
        page_size=2,
    )


def test_normalize_fqdn_appends_dot_and_lowercases():
    assert normalize_fqdn("Host2.Example.org") == "host2.example.org."
    assert normalize_fqdn("host.example.org.") == "host.example.org."


@pytest.mark.parametrize(
    "value,version,expected",
    [
        ("1.2.3.4", 4, "1.2.3.4"),
        (" 1.2.3.4 ", 4, "1.2.3.4"),
        ("2001:db8::1", 6, "2001:db8::1"),
        ("2001:db8::1", 4, None),
        ("1.2.3.4", 6, None),
        ("not-an-ip", 4, None),
        ("", 4, None),
        (None, 6, None),
    ],
)
def test_parse_address(value, version, expected):
    result = parse_address(value, version)
    if expected is None:
        assert result is None
    else:
        assert result == ipaddress.ip_address(expected)


def test_entry_to_record_decodes_bytes_and_case_insensitive_attrs(settings):
    attrs = {
        "AEFQDN": [b"Host1.Example.org"],
        "iphostnumber": [b"garbage", b"10.0.0.1"],
        "ipv6HostNumber": [b"2001:db8::5"],
    }

    record = entry_to_record("cn=host1", attrs, settings)

    assert record == HostRecord(
        fqdn="host1.example.org.",
        ipv4=ipaddress.IPv4Address("10.0.0.1"),
        ipv6=ipaddress.IPv6Address("2001:db8::5"),
    )


def test_entry_to_record_without_fqdn_is_skipped(settings):
    assert entry_to_record("cn=x", {"ipHostNumber": [b"10.0.0.1"]}, settings) is None
    assert entry_to_record("cn=y", {"aeFqdn": [b"  "]}, settings) is None


def test_entry_to_record_bad_address_is_absent_not_error(settings):
    record = entry_to_record(
        "cn=h", {"aeFqdn": [b"h.example.org"], "ipHostNumber": [b"999.1.1.1"]}, settings
    )

    assert record.fqdn == "h.example.org."
    assert record.ipv4 is None and record.ipv6 is None


def test_settings_attributes_drop_unset_and_duplicates():
    s = DirectorySettings(url="ldap://x", base_dn="dc=x", fqdn_attr="cn", ip4_attr="addr", ip6_attr="addr")
    assert s.attributes() == ["cn", "addr"]

    s = DirectorySettings(url="ldap://x", base_dn="dc=x", fqdn_attr="cn", ip4_attr=None, ip6_attr="v6")
    assert s.attributes() == ["cn", "v6"]


def test_fetch_host_records_in_directory_order(settings, make_directory, make_entry):
    fake = make_directory(
        [
            make_entry("cn=b", "b.example.org", ip4="10.0.0.2"),
            make_entry("cn=nofqdn", None, ip4="10.0.0.9"),
            make_entry("cn=a", "a.example.org.", ip6="2001:db8::a"),
        ]
    )

    records = fetch_host_records(settings, client_factory=fake.factory)

    assert [r.fqdn for r in records] == ["b.example.org.", "a.example.org."]
    assert records[0].ipv4 == ipaddress.IPv4Address("10.0.0.2")
    assert records[1].ipv6 == ipaddress.IPv6Address("2001:db8::a")
    assert fake.searches == [
        (
            "ou=hosts,dc=example,dc=org",
            "(objectClass=ipHost)",
            ["aeFqdn", "ipHostNumber", "ipv6HostNumber"],
            2,
        )
    ]
    assert fake.closed == 1


def test_fetch_host_records_failure_discards_everything_and_closes(
    settings, make_directory, make_entry
):
    fake = make_directory(
        [make_entry("cn=a", "a.example.org", ip4="10.0.0.1")],
        error=DirectoryError("searching (page 2): Server down"),
    )

    with pytest.raises(DirectoryError, match="page 2"):
        fetch_host_records(settings, client_factory=fake.factory)
    assert fake.closed == 1


def test_fetch_host_records_connect_failure_propagates(settings):
    def failing_factory(_settings):
        raise DirectoryError("connecting to ldap://ldap.example.org: Can't contact LDAP server")

    with pytest.raises(DirectoryError, match="connecting"):
        fetch_host_records(settings, client_factory=failing_factory)


def test_connect_without_python_ldap_raises_directory_error(settings, monkeypatch):
    monkeypatch.setattr(directory_mod, "ldap", None)

    with pytest.raises(DirectoryError, match="python-ldap"):
        LdapDirectoryClient.connect(settings)


class _PagedControl:
    controlType = "1.2.840.113556.1.4.319"

    def __init__(self, criticality, size, cookie):
        self.size = size
        self.cookie = cookie


class _FakeLdapModule:
    SCOPE_SUBTREE = 2

    class LDAPError(Exception):
        pass


class _FakeConn:
    """Brief: Serves two pages, then optionally fails on the third."""

    def __init__(self, pages, fail_on=None):
        self.pages = pages
        self.fail_on = fail_on
        self.cookies = []
        self.unbound = False

    def search_ext(self, base, scope, flt, attrs, serverctrls):
        self.cookies.append(serverctrls[0].cookie)
        return len(self.cookies)

    def result3(self, msgid):
        if self.fail_on == msgid:
            raise _FakeLdapModule.LDAPError({"desc": "Server down", "info": "reset"})
        rdata, cookie = self.pages[msgid - 1]
        ctrl = _PagedControl(True, 0, cookie)
        return (101, rdata, msgid, [ctrl])

    def unbind_s(self):
        self.unbound = True


def test_search_paged_follows_cookie(monkeypatch):
    monkeypatch.setattr(directory_mod, "ldap", _FakeLdapModule)
    monkeypatch.setattr(directory_mod, "SimplePagedResultsControl", _PagedControl)
    conn = _FakeConn(
        [
            ([("cn=a", {"cn": [b"a"]}), (None, ["ldap://referral"])], b"next"),
            ([("cn=b", {"cn": [b"b"]})], b""),
        ]
    )

    entries = LdapDirectoryClient(conn).search_paged("dc=x", "(cn=*)", ["cn"], 1)

    assert [dn for dn, _ in entries] == ["cn=a", "cn=b"]
    assert conn.cookies == ["", b"next"]


def test_search_paged_error_mentions_page(monkeypatch):
    monkeypatch.setattr(directory_mod, "ldap", _FakeLdapModule)
    monkeypatch.setattr(directory_mod, "SimplePagedResultsControl", _PagedControl)
    conn = _FakeConn([([("cn=a", {})], b"more"), ([], b"")], fail_on=2)

    with pytest.raises(DirectoryError) as excinfo:
        LdapDirectoryClient(conn).search_paged("dc=x", "(cn=*)", ["cn"], 1)

    assert "page 2" in str(excinfo.value)
    assert "Server down: reset" in str(excinfo.value)
