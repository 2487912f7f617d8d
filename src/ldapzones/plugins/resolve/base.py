from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Optional, Sequence, Union, final

from dnslib import QTYPE

from ldapzones.config.logging_config import build_handlers, parse_level

logger = logging.getLogger(__name__)


@dataclass
class PluginDecision:
    """
    Brief: Represents a decision made by a plugin.

    Inputs:
      - action: "allow", "deny" or "override".
      - response: DNS response wire bytes used when action == "override".
      - plugin_label: Optional name of the originating plugin, for logging.

    Outputs:
      - PluginDecision instance with attributes populated.
    """

    action: str
    response: Optional[bytes] = None
    plugin_label: Optional[str] = None


class PluginContext:
    """Brief: Per-query context passed to plugins.

    Inputs:
      - client_ip: str IP address of the requesting client.

    Outputs:
      - PluginContext instance.

    Example use:
        >>> ctx = PluginContext(client_ip="192.0.2.1")
        >>> ctx.client_ip
        '192.0.2.1'
    """

    @final
    def __init__(self, client_ip: str) -> None:
        self.client_ip = client_ip


class BasePlugin:
    """Brief: Base class for all resolve plugins.

    Plugins control execution order using:
      - pre_priority (for pre_resolve hooks; lower runs first)
      - post_priority (for post_resolve hooks; lower runs first)
      - setup_priority (for setup() hooks; lower runs first)

    Inputs:
      - name: Optional human-friendly identifier used in logs. Defaults to the
        first alias, then the class name.
      - **config: Plugin configuration including optional pre_priority,
        post_priority, setup_priority, targets, targets_ignore, target_qtypes and a
        per-plugin logging block. Plugins may also use an `abort_on_failure`
        boolean to control whether setup() failures abort startup
        (default True).

    Outputs:
      - Initialized plugin instance with priority attributes and targeting
        helpers.

    Example use:
        >>> class MyPlugin(BasePlugin):
        ...     pre_priority = 10
        >>> plugin = MyPlugin(name="mine", pre_priority=25)
        >>> plugin.pre_priority
        25
        >>> plugin.name
        'mine'
    """

    pre_priority: ClassVar[int] = 100
    post_priority: ClassVar[int] = 100
    setup_priority: ClassVar[int] = 100
    aliases: ClassVar[Sequence[str]] = ()
    target_qtypes: ClassVar[Sequence[str]] = ("*",)

    @classmethod
    def get_aliases(cls) -> Sequence[str]:
        return tuple(getattr(cls, "aliases", ()))

    @classmethod
    def get_config_model(cls):
        """Brief: Pydantic model used to validate this plugin's config, or None."""
        return None

    @final
    def __init__(self, name: Optional[str] = None, **config: object) -> None:
        """Initialize the BasePlugin with configuration, priorities, and targets.

        Inputs:
          - name: Optional friendly identifier.
          - **config: Plugin configuration including (optional):
            - pre_priority (int | str): 1-255, default from class.
            - post_priority (int | str): 1-255, default from class.
            - setup_priority (int | str): 1-255; falls back to pre_priority
              from config, then the class default.
            - targets / targets_ignore (list[str] | str | None): client CIDRs.
            - target_qtypes (list[str] | str | None): qtype mnemonics or "*".
            - logging (dict): per-plugin logging block.

        Outputs:
          - None

        Priority values are clamped to [1, 255]. Invalid values use 100.
        """
        if name is not None:
            self.name = str(name)
        else:
            aliases = list(self.__class__.get_aliases())
            self.name = str(aliases[0]) if aliases else self.__class__.__name__

        self.config = config
        logger.debug("loading %s", self)

        self.logger = logging.getLogger(getattr(self.__class__, "__module__", __name__))
        plugin_logging_cfg = config.get("logging")
        if isinstance(plugin_logging_cfg, dict):
            self._init_instance_logger(plugin_logging_cfg)

        self.pre_priority = self._parse_priority_value(
            config.get("pre_priority", self.__class__.pre_priority),
            "pre_priority",
            logger,
        )
        self.post_priority = self._parse_priority_value(
            config.get("post_priority", self.__class__.post_priority),
            "post_priority",
            logger,
        )
        raw_setup = config.get(
            "setup_priority",
            config.get("pre_priority", getattr(self.__class__, "setup_priority", 100)),
        )
        self.setup_priority = self._parse_priority_value(
            raw_setup,
            "setup_priority",
            logger,
        )

        self._target_networks = self._parse_network_list(config.get("targets"))
        self._ignore_networks = self._parse_network_list(config.get("targets_ignore"))

        raw_qtypes_cfg = config.get(
            "target_qtypes", getattr(self.__class__, "target_qtypes", ("*",))
        )
        self._target_qtypes = self._normalize_qtype_list(raw_qtypes_cfg)

    def _init_instance_logger(self, logging_cfg: Dict[str, object]) -> None:
        """Brief: Give this plugin its own handlers and level.

        Inputs:
          - logging_cfg: mapping with level, stderr, file and syslog keys, as
            in the root "logging" config.

        Outputs:
          - None; replaces the module logger's handlers and stops propagation.
        """
        logger_name = getattr(self.__class__, "__module__", __name__)
        plugin_logger = logging.getLogger(str(logger_name))
        plugin_logger.setLevel(parse_level(logging_cfg.get("level", "info")))

        for handler in list(plugin_logger.handlers):
            plugin_logger.removeHandler(handler)
        try:
            handlers = build_handlers(logging_cfg)
        except OSError as exc:
            logger.warning("Failed to configure logging for plugin %s: %s", self.name, exc)
            return
        for handler in handlers:
            plugin_logger.addHandler(handler)

        plugin_logger.propagate = False
        self.logger = plugin_logger

    @staticmethod
    def _normalize_qtype_list(raw: object) -> List[str]:
        if raw is None:
            return ["*"]
        if isinstance(raw, str):
            entries = [raw]
        elif isinstance(raw, (list, tuple)):
            entries = [str(x) for x in raw]
        else:
            logger.warning(
                "BasePlugin: ignoring invalid target_qtypes value %r (expected str or list)",
                raw,
            )
            return ["*"]

        normalized: List[str] = []
        for entry in entries:
            text = str(entry).strip()
            if not text:
                continue
            if text == "*":
                return ["*"]
            normalized.append(text.upper())
        return normalized or ["*"]

    @staticmethod
    def _parse_priority_value(value: object, key: str, logger: logging.Logger) -> int:
        """Brief: Parse and clamp a priority value to the inclusive range [1, 255].

        Example:
            >>> BasePlugin._parse_priority_value("25", "pre_priority", logger)
            25
            >>> BasePlugin._parse_priority_value(300, "pre_priority", logger)
            255
        """
        default = 100
        try:
            val = int(value)  # type: ignore[arg-type]
        except (ValueError, TypeError):
            logger.warning("Invalid %s %r; using default %d", key, value, default)
            return default

        if val < 1:
            logger.warning("%s below 1; clamping to 1", key)
            return 1
        if val > 255:
            logger.warning("%s above 255; clamping to 255", key)
            return 255
        return val

    @staticmethod
    def _parse_network_list(raw: object) -> List[ipaddress._BaseNetwork]:
        networks: List[ipaddress._BaseNetwork] = []
        if raw is None:
            return networks

        if isinstance(raw, str):
            entries = [raw]
        elif isinstance(raw, (list, tuple)):
            entries = [str(x) for x in raw]
        else:
            logger.warning(
                "BasePlugin: ignoring invalid targets value %r (expected str or list)",
                raw,
            )
            return networks

        for entry in entries:
            text = str(entry).strip()
            if not text:
                continue
            try:
                networks.append(ipaddress.ip_network(text, strict=False))
            except ValueError:
                logger.warning("BasePlugin: skipping invalid target entry %r", text)
        return networks

    def targets(self, ctx: PluginContext) -> bool:
        """Brief: Determine whether this plugin targets the given client IP.

        Inputs:
          - ctx: PluginContext providing client_ip.

        Outputs:
          - bool: True when the client is targeted.

        Behavior:
          - No targets and no ignores: every client is targeted.
          - targets_ignore always excludes matching clients.
          - Non-empty targets restrict to matching networks.
        """
        if not self._target_networks and not self._ignore_networks:
            return True

        client_ip = getattr(ctx, "client_ip", "")
        if not client_ip:
            return False
        try:
            addr = ipaddress.ip_address(client_ip)
        except ValueError:
            return False

        if any(addr in net for net in self._ignore_networks):
            return False
        if not self._target_networks:
            return True
        return any(addr in net for net in self._target_networks)

    def targets_qtype(self, qtype: Union[int, str]) -> bool:
        qtypes = list(getattr(self, "_target_qtypes", ["*"]))
        if not qtypes or "*" in qtypes:
            return True
        return self.qtype_name(qtype) in {qt.upper() for qt in qtypes}

    @staticmethod
    def qtype_name(qtype: Union[int, str]) -> str:
        """Brief: Normalize a DNS qtype value to its uppercase mnemonic.

        Example:
            >>> BasePlugin.qtype_name(28)
            'AAAA'
        """
        if isinstance(qtype, int):
            return str(QTYPE.get(qtype, str(qtype))).upper()
        return str(qtype).upper()

    def pre_resolve(
        self, qname: str, qtype: int, req: bytes, ctx: PluginContext
    ) -> Optional[PluginDecision]:
        """Brief: Hook that runs before the DNS query is resolved.

        Inputs:
          - qname: The queried domain name.
          - qtype: The query type.
          - req: The raw DNS request.
          - ctx: The plugin context.

        Outputs:
          - PluginDecision to short-circuit handling, or None to let the next
            handler see the query (default).

        Example use:
            >>> plugin = BasePlugin()
            >>> plugin.pre_resolve("example.com", 1, b"", PluginContext("127.0.0.1")) is None
            True
        """
        return None

    def post_resolve(
        self, qname: str, qtype: int, response_wire: bytes, ctx: PluginContext
    ) -> Optional[PluginDecision]:
        """Brief: Inspect or replace an upstream reply.

        Inputs:
          - qname: The queried domain name.
          - qtype: DNS query type.
          - response_wire: Reply wire bytes from the upstream resolver.
          - ctx: PluginContext for the client request.

        Outputs:
          - PluginDecision("deny") to answer NXDOMAIN, PluginDecision("override")
            with replacement wire bytes, or None to keep the reply (default).
        """
        return None

    def handle_sigusr2(self) -> None:
        """Brief: Handle SIGUSR2 (default implementation is a no-op)."""
        return None

    def setup(self) -> None:
        """Brief: Run one-time initialization for setup-aware plugins.

        Notes:
          - The main process calls setup() on plugins that override it, in
            ascending setup_priority order, before starting listeners.
        """
        return None

    def close(self) -> None:
        """Brief: Release background resources (default implementation is a no-op)."""
        return None


def plugin_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a plugin class for registry discovery.

    Example:
        >>> @plugin_aliases("acl", "access")
        ... class AccessControl(BasePlugin):
        ...     pass
        >>> AccessControl.aliases
        ('acl', 'access')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap
