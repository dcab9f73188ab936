"""Service configuration read from environment variables."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

_UNSIGNED = re.compile(r"\+?[0-9]+")
_U16_MAX = 2**16 - 1
_U64_MAX = 2**64 - 1


class ConfigError(ValueError):
    """Raised when the environment holds a missing or malformed setting."""


def _parse_unsigned(value: str, limit: int, message: str) -> int:
    if not _UNSIGNED.fullmatch(value):
        raise ConfigError(message)
    number = int(value)
    if number > limit:
        raise ConfigError(message)
    return number


@dataclass(frozen=True)
class Config:
    """Settings for the mirror server and its CSV importer."""

    database_url: str
    server_host: str = "0.0.0.0"
    server_port: int = 8001
    log_level: str = "segmirror=debug,uvicorn=info"
    csv_path: str = "mirror/sponsorTimes.csv"
    check_interval_seconds: int = 30
    file_check_interval_seconds: int = 60
    metrics_namespace: str = "api"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a configuration from ``environ`` (the process environment by default)."""
        env = os.environ if environ is None else environ

        try:
            database_url = env["DATABASE_URL"]
        except KeyError:
            raise ConfigError("DATABASE_URL environment variable must be set") from None

        server_port = _parse_unsigned(
            env.get("SERVER_PORT", "8001"),
            _U16_MAX,
            "SERVER_PORT must be a valid port number",
        )
        check_interval_seconds = _parse_unsigned(
            env.get("CHECK_INTERVAL_SECONDS", "30"),
            _U64_MAX,
            "CHECK_INTERVAL_SECONDS must be a valid number",
        )
        file_check_interval_seconds = _parse_unsigned(
            env.get("FILE_CHECK_INTERVAL_SECONDS", "60"),
            _U64_MAX,
            "FILE_CHECK_INTERVAL_SECONDS must be a valid number",
        )

        return cls(
            database_url=database_url,
            server_host=env.get("SERVER_HOST", cls.server_host),
            server_port=server_port,
            log_level=env.get("LOG_LEVEL", cls.log_level),
            csv_path=env.get("CSV_PATH", cls.csv_path),
            check_interval_seconds=check_interval_seconds,
            file_check_interval_seconds=file_check_interval_seconds,
            metrics_namespace=env.get("METRICS_NAMESPACE", cls.metrics_namespace),
        )

    def server_bind_address(self) -> str:
        """Return ``host:port`` for the listening socket."""
        return f"{self.server_host}:{self.server_port}"

    def check_interval(self) -> timedelta:
        """How often the importer wakes up."""
        return timedelta(seconds=self.check_interval_seconds)

    def file_check_interval(self) -> timedelta:
        """Minimum time between two looks at the CSV file."""
        return timedelta(seconds=self.file_check_interval_seconds)