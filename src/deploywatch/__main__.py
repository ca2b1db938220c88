"""Command-line entry point for the deploy watcher."""
from __future__ import annotations

import argparse
import logging
import signal
from pathlib import Path
from typing import List, Optional

from .config import AppConfig, ConfigError, default_config, load_config
from .monitor import DirectoryMonitor
from .mount import MountError, ShareMount
from .supervisor import DeploySupervisor, SupervisorError

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Watch a shared folder and keep a deployed process in sync with it"
    )
    parser.add_argument("--config", help="Path to an optional YAML configuration file")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--mount", dest="mount_point", help="Local mount point path")
    parser.add_argument("--server", help="SMB share path (//server/share)")
    parser.add_argument("--user", help="SMB username")
    parser.add_argument("--password", "--pass", dest="password", help="SMB password")
    parser.add_argument("--type", dest="share_type", help="Share type")
    parser.add_argument("--interval", type=float, help="Poll interval in seconds")
    parser.add_argument(
        "--no-mount",
        action="store_true",
        help="Watch the mount point as a plain local directory without mounting anything",
    )
    return parser.parse_args(argv)


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.mount_point:
        config.monitor.root_path = Path(args.mount_point)
    if args.interval is not None:
        if args.interval <= 0:
            raise ConfigError("--interval must be positive")
        config.monitor.poll_interval = args.interval
    if args.server:
        config.mount.server = args.server
    if args.user:
        config.mount.username = args.user
    if args.password:
        config.mount.password = args.password
    if args.share_type:
        config.mount.share_type = args.share_type
    if args.no_mount:
        config.mount.enabled = False
    return config


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    try:
        base_config = load_config(Path(args.config)) if args.config else default_config()
        app_config = _apply_overrides(base_config, args)
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    share = ShareMount(app_config.mount, app_config.monitor.root_path)
    try:
        share.acquire()
    except MountError as exc:
        logging.error("%s", exc)
        raise SystemExit(1) from exc

    supervisor: Optional[DeploySupervisor] = None
    try:
        try:
            supervisor = DeploySupervisor(app_config.monitor.root_path, app_config.supervisor)
        except ConfigError as exc:
            logging.error("%s", exc)
            raise SystemExit(2) from exc

        monitor = DirectoryMonitor(app_config.monitor)
        monitor.bus.subscribe(supervisor.handle)
        _install_signal_handlers(monitor)

        if app_config.supervisor.deploy_on_start:
            try:
                supervisor.redeploy()
            except SupervisorError as exc:
                logger.error("Initial deploy failed: %s", exc)

        monitor.run()
        logger.info("Watch ended")
    finally:
        if supervisor is not None:
            try:
                supervisor.kill()
            except SupervisorError as exc:
                logger.error("%s", exc)
        share.release()


def _install_signal_handlers(monitor: DirectoryMonitor) -> None:
    def _handle(signum, _frame) -> None:
        logger.info("Received %s, shutting down...", signal.Signals(signum).name)
        monitor.stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


if __name__ == "__main__":
    main()
