"""Configuration management for the context gateway."""

import copy
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog

from .orchestration.models import OrchestrationConfig
from .storage.models import RollbackCleanupConfig

ENV_ROLLBACK_DIR = "CONTEXT_GATEWAY_ROLLBACK_DIR"
ENV_LOG_LEVEL = "CONTEXT_GATEWAY_LOG_LEVEL"

# Default configuration
DEFAULT_CONFIG = {
    "logging": {
        "level": "INFO",
        "verbose": False,
        "debug": False,
        "terminal_safe": True,  # JSON logs keep MCP stdio clean
    },
    "orchestration": OrchestrationConfig().model_dump(),
    "rollback": {
        "directory": str(Path.home() / ".context-gateway" / "rollback"),
        "cleanup": RollbackCleanupConfig().model_dump(),
    },
}


def default_config_path() -> Path:
    return Path.home() / ".context-gateway" / "config.json"


class GatewayConfig:
    """Configuration manager backed by a JSON file."""

    def __init__(self, config_path: Path | None = None, configure_logging: bool = True):
        """Initialize configuration manager.

        Args:
            config_path: Path to config file. Defaults to ~/.context-gateway/config.json
            configure_logging: Apply the logging section to structlog immediately
        """
        if config_path is None:
            config_path = default_config_path()
            config_path.parent.mkdir(parents=True, exist_ok=True)

        self.config_path = Path(config_path)
        self.config = self._load_config()
        self._apply_environment()

        if configure_logging:
            self.configure_logging()

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file or create default."""
        config = copy.deepcopy(DEFAULT_CONFIG)

        if not self.config_path.exists():
            self._save_config(config)
            return config

        try:
            with open(self.config_path) as f:
                user_config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            structlog.get_logger().warning("Invalid config file, using defaults",
                                           path=str(self.config_path),
                                           error=str(e))
            return config

        self._deep_merge(config, user_config)
        return config

    def _deep_merge(self, target: dict[str, Any], source: dict[str, Any]) -> None:
        """Deep merge source into target dictionary."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._deep_merge(target[key], value)
            else:
                target[key] = value

    def _apply_environment(self) -> None:
        if os.environ.get(ENV_ROLLBACK_DIR):
            self.config["rollback"]["directory"] = os.environ[ENV_ROLLBACK_DIR]
        if os.environ.get(ENV_LOG_LEVEL):
            self.config["logging"]["level"] = os.environ[ENV_LOG_LEVEL]

    def _save_config(self, config: dict[str, Any]) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(config, f, indent=2)
        except OSError as e:
            structlog.get_logger().warning("Could not save config",
                                           path=str(self.config_path),
                                           error=str(e))

    def configure_logging(self) -> None:
        """Configure structlog based on the logging section."""
        log_level = self.get("logging.level", "INFO")
        verbose = self.get("logging.verbose", False)
        debug = self.get("logging.debug", False)
        terminal_safe = self.get("logging.terminal_safe", True)

        if debug:
            level = logging.DEBUG
        elif verbose:
            level = logging.INFO
        else:
            level = getattr(logging, str(log_level).upper(), logging.INFO)

        if terminal_safe and not (debug or verbose):
            renderer = structlog.processors.JSONRenderer()
        else:
            renderer = structlog.dev.ConsoleRenderer()

        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                renderer,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=False,
        )

    def update_config(self, **kwargs) -> None:
        """Update configuration and save to file.

        Args:
            **kwargs: Configuration updates; nested keys use dots, passed via
                dict unpacking (e.g. ``**{"logging.debug": True}``)
        """
        for key, value in kwargs.items():
            keys = key.split(".")
            current = self.config
            for k in keys[:-1]:
                current = current.setdefault(k, {})
            current[keys[-1]] = value

        self._save_config(self.config)
        self.configure_logging()

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g. ``"logging.level"``)."""
        current = self.config
        for k in key.split("."):
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default
        return current

    def orchestration_config(self) -> OrchestrationConfig:
        return OrchestrationConfig.model_validate(self.config["orchestration"])

    def rollback_cleanup_config(self) -> RollbackCleanupConfig:
        return RollbackCleanupConfig.model_validate(self.config["rollback"]["cleanup"])

    @property
    def rollback_dir(self) -> Path:
        return Path(self.config["rollback"]["directory"]).expanduser()
