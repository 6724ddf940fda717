#!/usr/bin/env python3
"""
Emergency Rollback

Flips a domain's nginx pointer back to the other color and reloads, with
no builds, health checks or container changes. Use this when the
orchestrator's own rollback did not work or the state file cannot be
trusted.

Usage:
    bluegreen-rollback <service>
    bluegreen-rollback <service> --to blue
    bluegreen-rollback <service> --to green --no-state
"""

import argparse
import logging
import sys
from contextlib import nullcontext
from typing import Optional

from bluegreen.config import Settings, settings as default_settings
from bluegreen.errors import CommandError, DeploymentError
from bluegreen.locks import reload_lock, service_lock
from bluegreen.logging_config import setup_logging
from bluegreen.models import Color, ColorStatus, HistoryEntry, LastDeployment, utcnow
from bluegreen.nginx import ProxyLayout
from bluegreen.proxy import NginxProxy
from bluegreen.registry import ServiceRegistry, StateStore
from bluegreen.switch import failure_is_ours

logger = logging.getLogger(__name__)


def emergency_rollback(service: str, to: Color = None, config: Settings = None, proxy=None,
                       update_state: bool = True) -> Color:
    config = config or default_settings
    registry = ServiceRegistry(config.registry_dir)
    name = registry.resolve_service_name(service)
    topology = registry.load_topology(name)
    layout = ProxyLayout(config.nginx_conf_dir)
    proxy = proxy or NginxProxy(config)
    states = StateStore(config.state_dir)

    # Only state writes take the service lock; --no-state flips the pointer alone
    guard = (
        service_lock(config.state_dir, name, timeout=config.LOCK_TIMEOUT_SECONDS)
        if update_state else nullcontext()
    )
    with guard:
        to = _flip_pointer(topology.domain, to, layout, proxy)
        if update_state:
            state = states.load(name)
            failed = to.other()
            state.active_color = to
            state.set_record(failed, status=ColorStatus.BACKUP)
            state.set_record(to, status=ColorStatus.RUNNING)
            state.last_deployment = LastDeployment(color=failed, timestamp=utcnow(), success=False)
            state.add_history(
                HistoryEntry(from_color=failed, to_color=to, success=False, rollback=True, error="emergency"),
                limit=config.HISTORY_LIMIT,
            )
            states.save_verified(name, state)

    logger.info(f"  Traffic for {topology.domain} is on {to.value}. Containers were not touched.")
    return to


def _flip_pointer(domain: str, to: Optional[Color], layout: ProxyLayout, proxy) -> Color:
    with reload_lock(layout.conf_dir):
        current = layout.current_color(domain)
        if to is None:
            if current is None:
                raise DeploymentError(
                    f"{layout.pointer(domain)} is not a blue/green symlink; pass --to explicitly"
                )
            to = current.other()
        to = Color(to)

        logger.info("=" * 50)
        logger.info(f"  EMERGENCY ROLLBACK: {domain} {current.value if current else '?'} -> {to.value}")
        logger.info("=" * 50)

        if not layout.document(domain, to).exists():
            raise DeploymentError(
                f"No {to.value} config at {layout.document(domain, to)}; nothing to roll back to"
            )

        snapshot = layout.snapshot(domain)
        layout.point(domain, to)
        test = proxy.test_config()
        if not test.ok and failure_is_ours(test, layout.document_names(domain)):
            layout.restore(domain, snapshot)
            raise DeploymentError(f"nginx -t failed, pointer restored:\n{test.output}")
        if not test.ok:
            logger.warning(f"  nginx -t reports errors in other services' configs, not {domain}")
        try:
            proxy.reload()
        except CommandError as e:
            layout.restore(domain, snapshot)
            proxy.reload()
            raise DeploymentError(f"nginx reload failed, pointer restored: {e}")
    return to


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Emergency Rollback")
    parser.add_argument("service", help="Service name or domain")
    parser.add_argument(
        "--to",
        choices=["blue", "green"],
        help="Rollback to specific color (default: the color nginx is not serving)",
    )
    parser.add_argument(
        "--no-state",
        action="store_true",
        help="Only flip nginx, leave the state file alone",
    )
    parser.add_argument("--project-root", default=None, help="Path to project root")
    args = parser.parse_args(argv)

    config = Settings(PROJECT_ROOT=args.project_root) if args.project_root else default_settings
    setup_logging(config)

    try:
        emergency_rollback(
            args.service,
            to=Color(args.to) if args.to else None,
            config=config,
            update_state=not args.no_state,
        )
    except DeploymentError as e:
        print(f"\nRollback error: {e}", file=sys.stderr)
        print("Manual fix: point the symlink and reload nginx:", file=sys.stderr)
        print(f"  ln -sfn blue-green/<domain>.<color>.conf {config.nginx_conf_dir}/<domain>.conf", file=sys.stderr)
        print(f"  docker exec {config.NGINX_CONTAINER} nginx -s reload", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
