from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional

from .config.config_parser import (
    load_plugins,
    normalize_upstream_config,
    parse_config_file,
)
from .config.logging_config import init_logging
from .plugins.resolve.base import BasePlugin
from .server import DNSServer


def _is_setup_plugin(plugin: BasePlugin) -> bool:
    """
    Determine whether a plugin overrides BasePlugin.setup and should
    participate in the setup phase.

    Example use:
      >>> class P(BasePlugin):
      ...     def setup(self):
      ...         pass
      >>> _is_setup_plugin(P())
      True
      >>> _is_setup_plugin(BasePlugin())
      False
    """
    return plugin.__class__.setup is not BasePlugin.setup


def run_setup_plugins(plugins: List[BasePlugin]) -> None:
    """
    Run setup() on all setup-aware plugins in ascending setup_priority order.

    Inputs:
      - plugins: List[BasePlugin] instances, typically from load_plugins().
    Outputs:
      - None; raises RuntimeError if a setup plugin with abort_on_failure=True
        fails.

    Example use:
      >>> run_setup_plugins([])  # no-op when there are no setup plugins
    """
    logger = logging.getLogger("ldapzones.main.setup")
    setup_entries = [
        (int(getattr(p, "setup_priority", 100)), p)
        for p in plugins or []
        if _is_setup_plugin(p)
    ]
    # Stable sort: configuration order is kept for equal priorities.
    setup_entries.sort(key=lambda item: item[0])

    for prio, plugin in setup_entries:
        cfg = getattr(plugin, "config", {}) or {}
        abort_on_failure = bool(cfg.get("abort_on_failure", True))
        logger.info(
            "Running setup for plugin %s (setup_priority=%d, abort_on_failure=%s)",
            plugin.name,
            prio,
            abort_on_failure,
        )
        try:
            plugin.setup()
        except Exception as e:
            logger.error("Setup for plugin %s failed: %s", plugin.name, e)
            if abort_on_failure:
                raise RuntimeError(f"Setup for plugin {plugin.name} failed") from e
            logger.warning(
                "Continuing startup despite setup failure in plugin %s "
                "because abort_on_failure is False",
                plugin.name,
            )


def close_plugins(plugins: List[BasePlugin]) -> None:
    logger = logging.getLogger("ldapzones.main")
    for plugin in plugins:
        try:
            plugin.close()
        except Exception:
            logger.exception("Error closing plugin %s", plugin.name)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point: load the config, set up plugins, and serve DNS over UDP.

    Args:
        argv: Command-line arguments.

    Returns:
        0 after a clean shutdown, 1 on configuration or setup failure.

    Example use:
        ldapzones --config config.yaml
    """
    parser = argparse.ArgumentParser(
        description="Authoritative DNS for zones mirrored from LDAP"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    args = parser.parse_args(argv)

    try:
        cfg = parse_config_file(args.config)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    init_logging(cfg.logging)
    logger = logging.getLogger("ldapzones.main")
    logger.info("Loaded config from %s", args.config)

    try:
        plugins = load_plugins(cfg.plugins)
    except (KeyError, TypeError, ValueError, ImportError) as exc:
        logger.error("Failed to load plugins: %s", exc)
        return 1

    try:
        run_setup_plugins(plugins)
    except RuntimeError as exc:
        logger.error("%s; exiting", exc)
        close_plugins(plugins)
        return 1

    upstreams = normalize_upstream_config(cfg)
    try:
        server = DNSServer(
            cfg.listen.host,
            cfg.listen.port,
            plugins,
            upstreams,
            timeout_ms=cfg.timeout_ms,
        )
    except OSError as exc:
        logger.error("Cannot listen on %s:%d: %s", cfg.listen.host, cfg.listen.port, exc)
        close_plugins(plugins)
        return 1

    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame):
        if shutdown_event.is_set():
            return
        shutdown_event.set()
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        # shutdown() blocks until serve_forever() returns; it must not run
        # on the thread that is serving.
        threading.Thread(target=server.stop, daemon=True).start()

    def _sigusr2_handler(_signum, _frame):
        for plugin in plugins:
            threading.Thread(
                target=plugin.handle_sigusr2,
                name=f"sigusr2-{plugin.name}",
                daemon=True,
            ).start()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)
    try:
        signal.signal(signal.SIGUSR2, _sigusr2_handler)
    except (AttributeError, ValueError):  # pragma: no cover - platform-specific
        logger.warning("Could not install SIGUSR2 handler on this platform")

    try:
        server.serve_forever()
    finally:
        close_plugins(plugins)
        logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
