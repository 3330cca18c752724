"""
Configuration module for loading and validating environment variables.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).parent.parent

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class SandboxSettings:
    """Runtime settings shared by the sandbox components."""
    workdir_base: Path = PROJECT_ROOT / "workdirs"
    base_image: str = "node:18"
    fallback_image: str = "node:latest"
    name_prefix: str = "ai-dev-"
    working_root: str = "/app"
    short_timeout: float = 10.0
    long_timeout: float = 30.0
    stop_grace: int = 10
    default_port: int = 3000
    log_poll_interval: float = 5.0
    compress_archive: bool = False


class Config:
    """Application configuration loaded from environment variables."""

    def __init__(self):
        # Load .env file from project root
        env_path = PROJECT_ROOT / ".env"
        load_dotenv(dotenv_path=env_path)

        self._invalid: Dict[str, str] = {}

        # Sandbox settings
        self.workdir_base = Path(os.getenv("AIDEV_WORKDIR_BASE", str(PROJECT_ROOT / "workdirs")))
        self.base_image = os.getenv("AIDEV_BASE_IMAGE", "node:18")
        self.fallback_image = os.getenv("AIDEV_FALLBACK_IMAGE", "node:latest")
        self.name_prefix = os.getenv("AIDEV_NAME_PREFIX", "ai-dev-")
        self.working_root = os.getenv("AIDEV_WORKING_ROOT", "/app")

        # Timeouts (seconds)
        self.short_timeout = self._float("AIDEV_SHORT_TIMEOUT", 10.0)
        self.long_timeout = self._float("AIDEV_LONG_TIMEOUT", 30.0)
        self.stop_grace = self._int("AIDEV_STOP_GRACE", 10)
        self.log_poll_interval = self._float("AIDEV_LOG_POLL_INTERVAL", 5.0)

        self.default_port = self._int("AIDEV_DEFAULT_PORT", 3000)
        self.compress_archive = self._bool("AIDEV_COMPRESS_ARCHIVE", False)
        self.log_level = os.getenv("AIDEV_LOG_LEVEL", "INFO").upper()

        # Validate required settings
        self._validate()

    def _float(self, name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw == "":
            return default
        try:
            return float(raw)
        except ValueError:
            self._invalid[name] = raw
            return default

    def _int(self, name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError:
            self._invalid[name] = raw
            return default

    def _bool(self, name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None or raw == "":
            return default
        value = raw.strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("0", "false", "no", "off"):
            return False
        self._invalid[name] = raw
        return default

    def _validate(self):
        """Validate that all environment variables hold usable values."""
        problems = [f"{name}={value!r}" for name, value in self._invalid.items()]

        if self.short_timeout <= 0:
            problems.append("AIDEV_SHORT_TIMEOUT must be positive")
        if self.long_timeout <= 0:
            problems.append("AIDEV_LONG_TIMEOUT must be positive")
        if not 0 < self.default_port < 65536:
            problems.append("AIDEV_DEFAULT_PORT must be a valid TCP port")
        if not self.working_root.startswith("/"):
            problems.append("AIDEV_WORKING_ROOT must be an absolute path")
        if not isinstance(logging.getLevelName(self.log_level), int):
            problems.append(f"AIDEV_LOG_LEVEL={self.log_level!r}")

        if problems:
            raise ConfigError(
                f"Invalid environment variables: {', '.join(problems)}\n"
                "Please fix your .env file. See .env.example for reference."
            )

    def settings(self) -> SandboxSettings:
        """Build the immutable settings handed to the sandbox components."""
        return SandboxSettings(
            workdir_base=self.workdir_base,
            base_image=self.base_image,
            fallback_image=self.fallback_image,
            name_prefix=self.name_prefix,
            working_root=self.working_root,
            short_timeout=self.short_timeout,
            long_timeout=self.long_timeout,
            stop_grace=self.stop_grace,
            default_port=self.default_port,
            log_poll_interval=self.log_poll_interval,
            compress_archive=self.compress_archive,
        )


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the engine and the dashboard."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
