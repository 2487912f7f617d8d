import pytest

from ldapzones.config.config_parser import (
    ServerConfig,
    _validate_plugin_config,
    load_plugins,
    normalize_upstream_config,
    parse_config,
    parse_config_file,
)
from ldapzones.plugins.resolve.base import BasePlugin
from ldapzones.plugins.resolve.ldap_zones import LdapZones

LDAP_CONFIG = {
    "zones": ["example.org"],
    "ldap_url": "ldap://ldap.example.org",
    "base_dn": "dc=example,dc=org",
    "attributes": {"fqdn": "aeFqdn", "ip4": "ipHostNumber"},
}


def test_parse_config_file_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        """
listen:
  host: 0.0.0.0
  port: 5300
upstreams:
  - host: 192.0.2.53
timeout_ms: 1500
logging:
  level: debug
plugins:
  - module: ldap
    config:
      zones: [example.org]
      ldap_url: ldap://ldap.example.org
      base_dn: dc=example,dc=org
      attributes: {fqdn: aeFqdn, ip4: ipHostNumber}
""",
        encoding="utf-8",
    )

    cfg = parse_config_file(str(path))

    assert cfg.listen.host == "0.0.0.0"
    assert cfg.listen.port == 5300
    assert normalize_upstream_config(cfg) == [{"host": "192.0.2.53", "port": 53}]
    assert cfg.timeout_ms == 1500
    assert cfg.logging == {"level": "debug"}
    assert cfg.plugins[0]["module"] == "ldap"


def test_parse_config_defaults_and_null_sections():
    cfg = parse_config({"logging": None, "plugins": None, "upstreams": None})

    assert isinstance(cfg, ServerConfig)
    assert cfg.listen.host == "127.0.0.1"
    assert cfg.upstreams == [] and cfg.plugins == [] and cfg.logging == {}


def test_parse_config_file_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        parse_config_file(str(path))


@pytest.mark.parametrize(
    "cfg",
    [
        {"listen": {"port": 70000}},
        {"upstreams": [{"port": 53}]},
        {"timeout_ms": 0},
    ],
)
def test_parse_config_rejects_invalid(cfg):
    with pytest.raises(ValueError, match="Invalid configuration"):
        parse_config(cfg)


def test_validate_plugin_config_normalizes_and_keeps_logging():
    validated = _validate_plugin_config(
        LdapZones, dict(LDAP_CONFIG, logging={"level": "debug"})
    )

    assert validated["zones"] == ["example.org."]
    assert validated["ttl"] == 3600
    assert validated["logging"] == {"level": "debug"}


def test_validate_plugin_config_reports_plugin_name():
    with pytest.raises(ValueError, match="LdapZones"):
        _validate_plugin_config(LdapZones, dict(LDAP_CONFIG, ttl=99999))


def test_validate_plugin_config_without_model_passes_through():
    assert _validate_plugin_config(BasePlugin, {"a": 1}) == {"a": 1}


def test_load_plugins_builds_instances_with_priorities():
    plugins = load_plugins(
        [
            {
                "module": "ldap",
                "name": "directory",
                "priority": 20,
                "config": dict(LDAP_CONFIG, abort_on_failure=False, setup_priority=5),
            },
            {"module": "ldap", "name": "disabled", "enabled": False, "config": LDAP_CONFIG},
        ]
    )

    assert len(plugins) == 1
    plugin = plugins[0]
    assert isinstance(plugin, LdapZones)
    assert plugin.name == "directory"
    assert plugin.pre_priority == 20
    assert plugin.setup_priority == 5
    assert plugin.config["abort_on_failure"] is False
    assert plugin.config["zones"] == ["example.org."]


def test_load_plugins_rejects_duplicate_names():
    spec = {"module": "ldap", "config": LDAP_CONFIG}

    with pytest.raises(ValueError, match="Duplicate plugin name"):
        load_plugins([spec, spec])


def test_load_plugins_unknown_alias():
    with pytest.raises(KeyError):
        load_plugins(["no_such_plugin"])


def test_load_plugins_invalid_plugin_config():
    with pytest.raises(ValueError, match="Invalid configuration for plugin LdapZones"):
        load_plugins([{"module": "ldap", "config": {"zones": ["example.org"]}}])
