"""
Brief: Global pytest configuration: import path and a per-test 10s timeout.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import os
import signal
import sys

import pytest

# Ensure 'src' is on sys.path so the 'ldapzones' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


class FakeDirectory:
    """
    Brief: In-memory stand-in for LdapDirectoryClient.

    Inputs:
      - entries: list of (dn, attrs) returned by search_paged().
      - error: optional exception raised by search_paged().

    Outputs:
      - Object recording searches and close() calls.
    """

    def __init__(self, entries=None, error=None):
        self.entries = list(entries or [])
        self.error = error
        self.searches = []
        self.closed = 0

    def search_paged(self, base_dn, search_filter, attributes, page_size):
        self.searches.append((base_dn, search_filter, list(attributes), page_size))
        if self.error is not None:
            raise self.error
        return list(self.entries)

    def close(self):
        self.closed += 1

    def factory(self, settings):
        return self


def host_entry(dn, fqdn=None, ip4=None, ip6=None):
    """Brief: Build a python-ldap style (dn, attrs) entry with bytes values."""
    attrs = {}
    if fqdn is not None:
        attrs["aeFqdn"] = [fqdn.encode()]
    if ip4 is not None:
        attrs["ipHostNumber"] = [ip4.encode()]
    if ip6 is not None:
        attrs["ipv6HostNumber"] = [ip6.encode()]
    return (dn, attrs)


@pytest.fixture
def restore_root_logger():
    """Brief: Snapshot root logger handlers and level; restore them after the test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for h in list(root.handlers):
        root.removeHandler(h)
        if h not in handlers:
            h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.captureWarnings(False)


@pytest.fixture
def make_directory():
    """Brief: Factory fixture: make_directory(entries, error=None) -> FakeDirectory."""
    return FakeDirectory


@pytest.fixture
def make_entry():
    """Brief: Factory fixture wrapping host_entry()."""
    return host_entry


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield
