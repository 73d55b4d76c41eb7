#!/usr/bin/env python3
"""
Configuration Manager for the ECR cleanup controller

This module handles loading and managing configuration from config.yaml,
environment variables and command line overrides, in increasing order of
precedence.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from ecr_cleanup.error_utils import ConfigValidationError, create_config_error
from ecr_cleanup.retention import RetentionPolicy

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "CLEANUP_INTERVAL": ("cleanup", "interval"),
    "MAX_IMAGES": ("cleanup", "max_images"),
    "DRY_RUN": ("cleanup", "dry_run"),
    "KEEP_FILTERS": ("cleanup", "keep_filters"),
    "AWS_REGION": ("aws", "region"),
    "ECR_REGISTRY_ID": ("aws", "registry_id"),
    "ECR_REPOSITORIES": ("aws", "repositories"),
    "KUBE_NAMESPACES": ("kubernetes", "namespaces"),
    "LOG_LEVEL": ("logging", "level"),
}


def parse_comma_separated_list(value: Any) -> List[str]:
    """Turn "a, b,,c " (or a YAML list) into ['a', 'b', 'c']"""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = value
    return [str(item).strip() for item in items if str(item).strip()]


def parse_pattern_list(value: Any) -> List[str]:
    """Turn a YAML list, or a string with one regex per line, into a list of regexes

    Patterns are never split on commas, since "{m,n}" is a regex quantifier.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.splitlines()
    else:
        items = value
    return [str(item).strip() for item in items if str(item).strip()]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


@dataclass
class CleanupTask:
    """Input parameters for the clean-up loop"""

    # Minutes between two clean-up cycles
    interval: int = 30
    # Number of images to keep in each ECR repository
    max_images: int = 900
    aws_region: str = "us-east-1"
    ecr_repositories: List[str] = field(default_factory=list)
    # Empty means in-cluster config (or the default kubeconfig outside a cluster)
    kube_config: str = ""
    # Images used by pods running in these namespaces will not get deleted
    kube_namespaces: List[str] = field(default_factory=lambda: ["default"])
    dry_run: bool = False
    registry_id: Optional[str] = None
    keep_filters: List[str] = field(default_factory=list)

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(max_images=self.max_images, keep_filters=tuple(self.keep_filters))


class ConfigManager:
    """Manages configuration for the cleanup controller"""

    def __init__(self, config_file: str = None, overrides: Optional[Dict[str, Any]] = None,
                 validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to CONFIG_FILE env var or config.yaml)
            overrides: Nested dict merged last, e.g. parsed command line flags
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self.config = self._merge_config(self.config, self._env_overrides())
        if overrides:
            self.config = self._merge_config(self.config, overrides)

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "cleanup": {"interval": 30, "max_images": 900, "dry_run": False, "keep_filters": []},
            "aws": {"region": "us-east-1", "registry_id": None, "repositories": []},
            "kubernetes": {"kubeconfig": "", "namespaces": ["default"]},
            "logging": {"level": "INFO"},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                self._check_sections(default_config, user_config)
                return self._merge_config(default_config, user_config)
            else:
                logging.warning(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Error loading config file {self.config_file}: {e}") from e

    def _check_sections(self, default: Dict[str, Any], user: Any) -> None:
        """The file must be a mapping, and so must each known section in it"""
        if not isinstance(user, dict):
            raise ConfigValidationError(
                f"Config file {self.config_file} must contain a mapping, got: {type(user).__name__}"
            )
        for section in default:
            if section in user and not isinstance(user[section], dict):
                raise ConfigValidationError(
                    create_config_error(section, user[section], "must be a mapping of settings").format_message()
                )

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    @staticmethod
    def _env_overrides() -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        for env_var, (section, key) in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if value:
                overrides.setdefault(section, {})[key] = value
        return overrides

    def _get_int(self, section: str, key: str) -> int:
        value = self.config[section][key]
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                create_config_error(f"{section}.{key}", value, "must be an integer").format_message()
            )

    # Cleanup configuration
    def get_interval(self) -> int:
        """Get the check interval in minutes"""
        return self._get_int("cleanup", "interval")

    def get_max_images(self) -> int:
        """Get the number of images to keep in each repository"""
        return self._get_int("cleanup", "max_images")

    def is_dry_run(self) -> bool:
        return _parse_bool(self.config["cleanup"]["dry_run"])

    def get_keep_filters(self) -> List[str]:
        return parse_pattern_list(self.config["cleanup"]["keep_filters"])

    # AWS configuration
    def get_aws_region(self) -> str:
        return str(self.config["aws"]["region"] or "").strip()

    def get_registry_id(self) -> Optional[str]:
        """Get the registry (account) id override, None for the caller's default registry"""
        registry_id = self.config["aws"].get("registry_id")
        return str(registry_id).strip() if registry_id else None

    def get_repositories(self) -> List[str]:
        return parse_comma_separated_list(self.config["aws"]["repositories"])

    # Kubernetes configuration
    def get_kubeconfig(self) -> str:
        return self.config["kubernetes"]["kubeconfig"] or ""

    def get_namespaces(self) -> List[str]:
        return parse_comma_separated_list(self.config["kubernetes"]["namespaces"])

    def get_log_level(self) -> str:
        return str(self.config["logging"]["level"]).upper()

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        if not self.get_namespaces():
            errors.append("Must specify at least one namespace")

        if not self.get_repositories():
            errors.append("Must specify at least one ECR repository to watch")

        try:
            interval = self.get_interval()
            if interval < 1:
                errors.append(f"cleanup.interval must be a positive number of minutes, got: {interval}")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            max_images = self.get_max_images()
            if max_images < 0:
                errors.append(f"cleanup.max_images must be a non-negative integer, got: {max_images}")
            elif max_images == 0:
                warnings.append("cleanup.max_images is 0, every unused image not tagged 'latest' may be removed")
        except ConfigValidationError as e:
            errors.append(str(e))

        for pattern in self.get_keep_filters():
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"Keep filter '{pattern}' is not a valid regular expression: {e}")

        if not self.get_aws_region():
            errors.append("AWS region is required and cannot be empty")

        registry_id = self.get_registry_id()
        if registry_id and not re.match(r"^[0-9]{12}$", registry_id):
            warnings.append(f"Registry id '{registry_id}' does not look like a 12 digit AWS account id")

        if logging.getLevelName(self.get_log_level()) == f"Level {self.get_log_level()}":
            errors.append(f"Unknown log level: {self.get_log_level()}")

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg)

    def to_cleanup_task(self) -> CleanupTask:
        """Build the CleanupTask the controller runs with"""
        return CleanupTask(
            interval=self.get_interval(),
            max_images=self.get_max_images(),
            aws_region=self.get_aws_region(),
            ecr_repositories=self.get_repositories(),
            kube_config=self.get_kubeconfig(),
            kube_namespaces=self.get_namespaces(),
            dry_run=self.is_dry_run(),
            registry_id=self.get_registry_id(),
            keep_filters=self.get_keep_filters(),
        )

    def print_config(self):
        """Log current configuration"""
        logging.info("Current Configuration:")
        logging.info(f"  Interval (minutes): {self.get_interval()}")
        logging.info(f"  Max Images: {self.get_max_images()}")
        logging.info(f"  AWS Region: {self.get_aws_region()}")
        logging.info(f"  Registry Id: {self.get_registry_id() or 'default'}")
        logging.info(f"  Repositories: {', '.join(self.get_repositories())}")
        logging.info(f"  Namespaces: {', '.join(self.get_namespaces())}")
        logging.info(f"  Keep Filters: {', '.join(self.get_keep_filters()) or 'none'}")
        logging.info(f"  Dry Run: {self.is_dry_run()}")
