"""Plugin lookup for the config loader.

Brief:
  - Resolve plugins live in the modules named by PLUGIN_MODULES. Each
    BasePlugin subclass defined there is known by its @plugin_aliases names
    and by its class name in snake_case.
  - A plugin entry's "module" is either one of those names or a dotted
    "package.module.Class" path to any BasePlugin subclass.
"""

from __future__ import annotations

import importlib
import logging
import re
from typing import Dict, Iterable, Optional, Tuple, Type

from .base import BasePlugin

logger = logging.getLogger(__name__)

PLUGIN_MODULES: Tuple[str, ...] = ("ldap_zones",)

_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

Registry = Dict[str, Type[BasePlugin]]


def alias_key(text: str) -> str:
    """Brief: Normalize a plugin name: "LDAP-Zones" -> "ldap_zones"."""
    return text.strip().lower().replace("-", "_")


def class_aliases(cls: Type[BasePlugin]) -> Tuple[str, ...]:
    """Brief: Every name a plugin class answers to.

    Example:
      >>> from ldapzones.plugins.resolve.ldap_zones import LdapZones
      >>> class_aliases(LdapZones)
      ('ldap', 'ldap_zones')
    """
    base_name = cls.__name__
    if base_name.endswith("Plugin") and base_name != "Plugin":
        base_name = base_name[: -len("Plugin")]
    names = [alias_key(a) for a in cls.get_aliases()]
    names.append(alias_key(_WORD_BOUNDARY.sub("_", base_name)))
    return tuple(dict.fromkeys(names))


def discover_plugins(modules: Iterable[str] = PLUGIN_MODULES) -> Registry:
    """Brief: Import the plugin modules and map every alias to its class.

    Inputs:
      - modules: module names relative to this package.

    Outputs:
      - dict alias -> plugin class.

    Raises:
      - ImportError: a plugin module failed to import.
      - ValueError: two classes claim the same alias.
    """
    registry: Registry = {}
    for name in modules:
        module = importlib.import_module(f"{__package__}.{name}")
        for obj in vars(module).values():
            if not isinstance(obj, type) or not issubclass(obj, BasePlugin):
                continue
            if obj.__module__ != module.__name__:
                continue
            for alias in class_aliases(obj):
                other = registry.get(alias)
                if other is not None and other is not obj:
                    raise ValueError(
                        f"Plugin alias '{alias}' claimed by both "
                        f"{other.__qualname__} and {obj.__qualname__}"
                    )
                registry[alias] = obj
    logger.debug("Plugin aliases: %s", ", ".join(sorted(registry)))
    return registry


def _import_class(path: str) -> Type[BasePlugin]:
    modname, _, classname = path.rpartition(".")
    if not modname or not classname:
        raise ValueError(f"Invalid plugin path '{path}'")
    cls = getattr(importlib.import_module(modname), classname)
    if not isinstance(cls, type) or not issubclass(cls, BasePlugin):
        raise TypeError(f"{path} is not a BasePlugin subclass")
    return cls


def get_plugin_class(identifier: str, registry: Optional[Registry] = None) -> Type[BasePlugin]:
    """Brief: Resolve a plugin entry's "module" value to a plugin class.

    Raises:
      - KeyError: unknown alias; the message lists the known ones.
      - TypeError / ValueError / ImportError: bad dotted path.
    """
    ident = identifier.strip()
    if "." in ident:
        return _import_class(ident)

    known = registry if registry is not None else discover_plugins()
    try:
        return known[alias_key(ident)]
    except KeyError:
        raise KeyError(
            f"Unknown plugin '{identifier}'; available: {', '.join(sorted(known))}"
        ) from None
