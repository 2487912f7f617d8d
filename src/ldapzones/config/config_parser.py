"""Configuration parsing and plugin loading for ldapzones.

Brief:
  This module holds the configuration utilities used by the CLI entrypoint:
    - reading and validating the YAML config file (ServerConfig)
    - normalizing upstream definitions
    - loading plugins from config plugin specs, validating each plugin's
      config through its pydantic model

Inputs:
  - YAML config files and dicts

Outputs:
  - Validated ServerConfig instances and constructed plugin instances
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, validator

from ..plugins.resolve.base import BasePlugin
from ..plugins.resolve.registry import discover_plugins, get_plugin_class


class ListenConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5353, ge=0, le=65535)


class UpstreamConfig(BaseModel):
    host: str = Field(...)
    port: int = Field(default=53, ge=1, le=65535)


class ServerConfig(BaseModel):
    """Brief: Root configuration model.

    Inputs:
      - listen: UDP listener address (default 127.0.0.1:5353).
      - upstreams: resolvers used when every plugin falls through.
      - timeout_ms: per-upstream timeout in milliseconds.
      - logging: root logging block (see init_logging()).
      - plugins: plugin spec list (see load_plugins()).

    Outputs:
      - ServerConfig instance.
    """

    listen: ListenConfig = Field(default_factory=ListenConfig)
    upstreams: List[UpstreamConfig] = Field(default_factory=list)
    timeout_ms: int = Field(default=2000, ge=1)
    logging: Dict[str, Any] = Field(default_factory=dict)
    plugins: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)

    @validator("logging", "listen", pre=True)
    def _none_is_default(cls, v: object) -> object:  # type: ignore[override]
        return {} if v is None else v

    @validator("upstreams", "plugins", pre=True)
    def _none_is_empty(cls, v: object) -> object:  # type: ignore[override]
        return [] if v is None else v


def parse_config_file(config_path: str) -> ServerConfig:
    """Brief: Read and validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.

    Outputs:
      - ServerConfig

    Raises:
      - ValueError: when the file is not a mapping or fails validation.
      - OSError: when the file cannot be read.
    """
    with open(config_path, "r") as f:
        cfg = yaml.safe_load(f) or {}

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")
    return parse_config(cfg)


def parse_config(cfg: Dict[str, Any]) -> ServerConfig:
    try:
        return ServerConfig(**cfg)
    except Exception as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def normalize_upstream_config(cfg: ServerConfig) -> List[Dict[str, Union[str, int]]]:
    """Brief: Upstreams as the list of {'host', 'port'} dicts the server expects."""
    return [{"host": u.host, "port": int(u.port)} for u in cfg.upstreams]


def _model_to_dict(model_instance: BaseModel) -> dict:
    return dict(model_instance.dict())


def _validate_plugin_config(plugin_cls: type[BasePlugin], config: dict | None) -> dict:
    """Brief: Validate and normalize plugin configuration via its config model.

    Inputs:
      - plugin_cls: Plugin class (subclass of BasePlugin).
      - config: Raw config mapping for this plugin (may be None).

    Outputs:
      - dict: Validated/normalized config mapping to be passed into plugin_cls.

    Notes:
      - The "logging" sub-config belongs to BasePlugin and is carried across
        validation unchanged.
    """
    base_cfg: dict = dict(config or {})
    logging_cfg = base_cfg.pop("logging", None)

    model_cls = plugin_cls.get_config_model()
    if model_cls is None:
        validated = base_cfg
    else:
        try:
            validated = _model_to_dict(model_cls(**base_cfg))
        except Exception as exc:
            raise ValueError(
                f"Invalid configuration for plugin {plugin_cls.__name__}: {exc}"
            ) from exc

    if logging_cfg is not None:
        validated["logging"] = logging_cfg
    return validated


def load_plugins(plugin_specs: List[Union[str, dict]]) -> List[BasePlugin]:
    """Brief: Load and initialize plugins from config plugin specifications.

    Inputs:
      - plugin_specs: List of plugin specs. Each item is either:
        - str: a dotted class path or short alias, or
        - dict: plugin entry mapping supporting:
          - module: dotted class path or alias
          - name: optional instance label (defaults to the module text)
          - config: plugin-specific configuration mapping
          - enabled: bool (default True). When false, the plugin is skipped.
          - pre_priority/post_priority/setup_priority: BasePlugin hook
            priorities
          - priority: shorthand that sets both priority fields above

    Outputs:
      - list[BasePlugin]: Initialized plugin instances (setup() not yet run).

    Raises:
      - ValueError: duplicate instance names or invalid plugin config.
      - KeyError: unknown plugin alias.

    Example:
      >>> load_plugins([])
      []
    """
    alias_registry = discover_plugins()
    plugins: List[BasePlugin] = []
    seen_names: set[str] = set()

    for spec in plugin_specs or []:
        priorities: Dict[str, object] = {}
        if isinstance(spec, str):
            module_path: Optional[str] = spec
            plugin_name: Optional[object] = None
            raw_config: Dict[str, Any] = {}
            enabled: object = True
        elif isinstance(spec, dict):
            module_path = spec.get("module")
            plugin_name = spec.get("name")
            enabled = spec.get("enabled", True)
            cfg_obj = spec.get("config", {})
            raw_config = dict(cfg_obj) if isinstance(cfg_obj, dict) else {}
            generic = spec.get("priority", raw_config.pop("priority", None))
            for key in ("pre_priority", "post_priority", "setup_priority"):
                value = raw_config.pop(key, spec.get(key))
                if value is None:
                    value = generic
                if value is not None:
                    priorities[key] = value
            if "enabled" in raw_config:
                enabled = raw_config.pop("enabled")
        else:
            continue

        if not module_path:
            continue
        if not bool(enabled):
            continue

        effective_name = str(plugin_name if plugin_name is not None else module_path).strip()
        if not effective_name:
            raise ValueError("plugins[]: each entry must have a non-empty module or name")
        if effective_name in seen_names:
            raise ValueError(
                "Duplicate plugin name '%s'. Each plugin must have a unique name; "
                "set 'name' explicitly in plugins[] to disambiguate." % effective_name
            )
        seen_names.add(effective_name)

        abort_on_failure = raw_config.pop("abort_on_failure", None)

        plugin_cls = get_plugin_class(module_path, alias_registry)
        validated_config = _validate_plugin_config(plugin_cls, raw_config)
        validated_config.update(priorities)
        if abort_on_failure is not None:
            validated_config["abort_on_failure"] = bool(abort_on_failure)

        plugins.append(plugin_cls(name=effective_name, **validated_config))

    return plugins
