"""
Brief: Tests for ldapzones.main setup ordering and CLI entry.

Inputs:
  - None

Outputs:
  - None
"""

import pytest

import ldapzones.main as main_mod
from ldapzones.errors import DirectoryError
from ldapzones.main import _is_setup_plugin, close_plugins, main, run_setup_plugins
from ldapzones.plugins.resolve.base import BasePlugin

CONFIG_YAML = """
listen:
  host: 127.0.0.1
  port: 0
logging:
  stderr: false
plugins:
  - module: ldap
    config:
      zones: [example.org]
      ldap_url: ldap://ldap.example.org
      base_dn: dc=example,dc=org
      attributes: {fqdn: aeFqdn, ip4: ipHostNumber}
      sync_interval: 0
"""


def _setup_plugin(calls, name, fail=False, **config):
    class SetupPlugin(BasePlugin):
        def setup(self):
            calls.append(self.name)
            if fail:
                raise RuntimeError("boom")

    return SetupPlugin(name=name, **config)


def test_is_setup_plugin():
    assert _is_setup_plugin(_setup_plugin([], "x")) is True
    assert _is_setup_plugin(BasePlugin()) is False


def test_run_setup_plugins_orders_by_setup_priority():
    calls = []
    plugins = [
        _setup_plugin(calls, "late", setup_priority=200),
        _setup_plugin(calls, "early", setup_priority=10),
        BasePlugin(name="plain"),
        _setup_plugin(calls, "middle"),
    ]

    run_setup_plugins(plugins)

    assert calls == ["early", "middle", "late"]


def test_run_setup_plugins_aborts_by_default():
    calls = []
    plugins = [
        _setup_plugin(calls, "bad", fail=True, setup_priority=1),
        _setup_plugin(calls, "after", setup_priority=2),
    ]

    with pytest.raises(RuntimeError, match="Setup for plugin bad failed"):
        run_setup_plugins(plugins)
    assert calls == ["bad"]


def test_run_setup_plugins_continues_when_abort_disabled():
    calls = []
    plugins = [
        _setup_plugin(calls, "bad", fail=True, setup_priority=1, abort_on_failure=False),
        _setup_plugin(calls, "after", setup_priority=2),
    ]

    run_setup_plugins(plugins)

    assert calls == ["bad", "after"]


def test_close_plugins_logs_and_continues(caplog):
    closed = []

    class Closing(BasePlugin):
        def close(self):
            closed.append(self.name)
            if self.name == "first":
                raise OSError("socket gone")

    close_plugins([Closing(name="first"), Closing(name="second")])

    assert closed == ["first", "second"]
    assert "Error closing plugin first" in caplog.text


def test_main_missing_config_returns_1(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "absent.yaml")]) == 1
    assert "absent.yaml" in capsys.readouterr().out


def test_main_unknown_plugin_returns_1(tmp_path, restore_root_logger):
    path = tmp_path / "config.yaml"
    path.write_text("logging: {stderr: false}\nplugins: [no_such_plugin]\n")

    assert main(["--config", str(path)]) == 1


def test_main_setup_failure_returns_1(tmp_path, monkeypatch, restore_root_logger):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)

    def _unreachable(settings, client_factory=None):
        raise DirectoryError("connecting to ldap://ldap.example.org: Can't contact LDAP server")

    monkeypatch.setattr(
        "ldapzones.plugins.resolve.ldap_zones.fetch_host_records", _unreachable
    )

    assert main(["--config", str(path)]) == 1


def test_main_serves_and_closes_plugins(tmp_path, monkeypatch, restore_root_logger):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML + "upstreams:\n  - host: 192.0.2.53\n")
    monkeypatch.setattr(
        "ldapzones.plugins.resolve.ldap_zones.fetch_host_records",
        lambda settings, client_factory=None: [],
    )
    monkeypatch.setattr(main_mod.signal, "signal", lambda *a: None)
    seen = {}

    class FakeServer:
        def __init__(self, host, port, plugins, upstreams, timeout_ms):
            seen.update(host=host, port=port, plugins=plugins, upstreams=upstreams, timeout_ms=timeout_ms)

        def serve_forever(self):
            seen["served"] = True

        def stop(self):  # pragma: no cover - not reached without a signal
            pass

    monkeypatch.setattr(main_mod, "DNSServer", FakeServer)

    assert main(["--config", str(path)]) == 0
    assert seen["served"] is True
    assert seen["upstreams"] == [{"host": "192.0.2.53", "port": 53}]
    assert seen["timeout_ms"] == 2000
    (plugin,) = seen["plugins"]
    assert plugin.scheduler.state.name == "STOPPED"


def test_main_bind_failure_returns_1(tmp_path, monkeypatch, restore_root_logger):
    path = tmp_path / "config.yaml"
    path.write_text("logging: {stderr: false}\n")

    def _refuse(*a, **kw):
        raise OSError("Address already in use")

    monkeypatch.setattr(main_mod, "DNSServer", _refuse)

    assert main(["--config", str(path)]) == 1
