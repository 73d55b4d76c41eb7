#!/usr/bin/env python3
"""
Kubernetes ECR image cleanup controller.

Periodically removes old ECR images that are not used by any pod running in
the watched namespaces.

Usage examples:
  # Keep at most 500 images in two repositories, checking every 10 minutes
  kube-ecr-cleanup --repos api,worker --max-images 500 --interval 10

  # Only log what would be removed, once
  kube-ecr-cleanup --repos api --dry-run --once

  # Never remove release images
  kube-ecr-cleanup --repos api --keep-filters '^release-' --keep-filters '^v[0-9]{1,3}$'
"""

import argparse
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from ecr_cleanup import __version__
from ecr_cleanup.config_manager import ConfigManager
from ecr_cleanup.error_utils import ConfigValidationError
from ecr_cleanup.logging_utils import get_logger, setup_logging
from ecr_cleanup.processor import ImageCleanupLoop

logger = get_logger(__name__)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Remove old, unused images from ECR repositories",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage examples:")[1] if "Usage examples:" in __doc__ else None,
    )
    parser.add_argument("--config", help="Path to a YAML configuration file (default: CONFIG_FILE or config.yaml)")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file.")
    parser.add_argument("--namespaces",
                        help="Do not remove images used by pods in this comma-separated list of namespaces.")
    parser.add_argument("--interval", type=int, help="Check interval in minutes.")
    parser.add_argument("--max-images", type=int, help="Maximum number of images to keep in each repository.")
    parser.add_argument("--repos", help="Comma-separated list of repository names to watch.")
    parser.add_argument("--region", help="AWS Region to use when talking to AWS.")
    parser.add_argument("--registry-id", help="AWS account id of the registry, if not the caller's own.")
    parser.add_argument("--keep-filters", action="append", metavar="REGEX",
                        help="Never remove images with a tag matching this regex (repeat for more than one).")
    dry_run = parser.add_mutually_exclusive_group()
    dry_run.add_argument("--dry-run", dest="dry_run", action="store_true", help="Just log, don't delete any images.")
    dry_run.add_argument("--no-dry-run", dest="dry_run", action="store_false",
                         help="Delete images even if DRY_RUN or the config file enables dry-run.")
    parser.set_defaults(dry_run=None)
    parser.add_argument("--once", action="store_true", help="Run a single clean-up cycle and exit.")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Turn command line flags into a nested config dict, skipping unset flags"""
    overrides: Dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    put("cleanup", "interval", args.interval)
    put("cleanup", "max_images", args.max_images)
    put("cleanup", "dry_run", args.dry_run)
    if args.keep_filters:
        put("cleanup", "keep_filters", list(args.keep_filters))
    put("aws", "region", args.region)
    put("aws", "registry_id", args.registry_id)
    put("aws", "repositories", args.repos)
    put("kubernetes", "kubeconfig", args.kubeconfig)
    put("kubernetes", "namespaces", args.namespaces)
    put("logging", "level", args.log_level)
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)

    try:
        config_manager = ConfigManager(config_file=args.config, overrides=build_overrides(args))
    except ConfigValidationError as e:
        logger.error(str(e))
        return 1

    setup_logging(config_manager.get_log_level())
    task = config_manager.to_cleanup_task()

    logger.info(f"Kubernetes ECR Image Cleanup Controller v{__version__} started, "
                f"will run every {task.interval} minute(s).")
    config_manager.print_config()
    for repo in task.ecr_repositories:
        logger.info(f"Will clean up '{repo}' repo in '{task.aws_region}' region.")
    for namespace in task.kube_namespaces:
        logger.info(f"Images currently used by pods in '{namespace}' namespace *will not* be removed.")

    loop = ImageCleanupLoop(task)

    if args.once:
        try:
            errors = loop.run_once()
        except Exception as e:
            logger.error(f"Cannot create Kubernetes or ECR client: {e}")
            return 1
        return 1 if errors else 0

    shutdown = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Shutdown signal received, exiting...")
        shutdown.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    loop.start()
    while not shutdown.wait(1.0):
        if not loop.is_running():
            break

    loop.stop()
    loop.wait()

    if loop.startup_error is not None:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
