"""Configuration for the Shipyard daemon.

Provides the daemon configuration with sensible defaults, loaded from the
repository's JSON config file and overridden by environment variables.
Unknown keys and wrongly-typed values are rejected so that a typo in the
config file never silently falls back to a default.
"""

import json
import os
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
)

from shipyard.errors import ConfigError
from shipyard.models import describe_errors

DEFAULT_CONFIG_PATH = Path(".claude") / "daemon-config.json"

DEFAULT_PRIORITY_LABELS = ["urgent", "p0", "high", "p1", "normal", "p2", "low", "p3"]

# Fields of DaemonConfig that only come from the environment
RUNTIME_FIELDS = {"state_dir", "otlp_endpoint", "service_name"}


class OnSuccess(BaseModel):
    """Tracker actions applied when a job succeeds."""

    model_config = ConfigDict(extra="forbid")

    remove_label: StrictStr = "ready-to-build"
    add_label: StrictStr = "pipeline/complete"
    close_issue: StrictBool = False


class OnFailure(BaseModel):
    """Tracker actions applied when a job fails for good."""

    model_config = ConfigDict(extra="forbid")

    add_label: StrictStr = "pipeline/failed"
    comment_log_lines: StrictInt = 50


class NotificationSettings(BaseModel):
    """Outbound webhook targets. Both are optional."""

    model_config = ConfigDict(extra="forbid")

    slack_webhook: StrictStr | None = None
    webhook_url: StrictStr | None = None


class HealthSettings(BaseModel):
    """Health monitor thresholds.

    Attributes:
        progress_based: Use progress sensing instead of the static stale timeout
        stale_timeout_s: Static timeout used when progress sensing is disabled
        hard_limit_s: Wall-clock ceiling after which a job is always killed
        warn_threshold: No-progress checks before a job counts as stalled
        kill_threshold: No-progress checks before a job counts as stuck
        min_free_disk_mb: Free disk below this is reported as a finding
        max_events_mb: Event log above this size is reported as a finding
    """

    model_config = ConfigDict(extra="forbid")

    progress_based: StrictBool = True
    stale_timeout_s: StrictInt = 1800
    hard_limit_s: StrictInt = 10800
    warn_threshold: StrictInt = 3
    kill_threshold: StrictInt = 6
    min_free_disk_mb: StrictInt = 1024
    max_events_mb: StrictInt = 100


class AlertSettings(BaseModel):
    """Degradation detector window and thresholds (percentages)."""

    model_config = ConfigDict(extra="forbid")

    degradation_window: StrictInt = 5
    cfr_threshold: StrictInt = 30
    success_threshold: StrictInt = 50


class DaemonConfig(BaseModel):
    """Configuration for daemon execution.

    All settings have sensible defaults. File values are loaded with
    from_file() and environment overrides applied with from_env().
    """

    model_config = ConfigDict(extra="forbid")

    # Work discovery
    watch_label: StrictStr = "ready-to-build"
    poll_interval: StrictInt = 60
    max_parallel: StrictInt = 2
    priority_labels: list[StrictStr] = Field(
        default_factory=lambda: list(DEFAULT_PRIORITY_LABELS)
    )

    # Job process settings
    repo: StrictStr = "."
    base_branch: StrictStr = "main"
    agent_command: list[StrictStr] = Field(
        default_factory=lambda: ["shipwright", "pipeline"]
    )
    pipeline_template: StrictStr = "autonomous"
    skip_gates: StrictBool = True
    model: StrictStr | None = "opus"

    # Retry policy
    max_retries: StrictInt = 2
    retry_escalation: StrictBool = True
    max_restarts: StrictInt = 3
    retry_backoff_s: StrictInt = 30
    api_backoff_s: StrictInt = 300

    # Adaptive cycle limit passed to fresh jobs
    compound_cycles: StrictInt = 3
    adaptive_cycles: StrictBool = True

    on_success: OnSuccess = Field(default_factory=OnSuccess)
    on_failure: OnFailure = Field(default_factory=OnFailure)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)

    # Runtime files (not read from the config file)
    state_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("SHIPYARD_HOME", str(Path.home() / ".shipyard"))
        )
    )

    # Telemetry settings (not read from the config file)
    otlp_endpoint: str = Field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "shipyard"

    @property
    def repo_path(self) -> Path:
        """Absolute path of the repository the daemon works on."""
        return Path(self.repo).expanduser().resolve()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaemonConfig":
        """Build a config from a parsed config document.

        Args:
            data: Parsed JSON object

        Returns:
            DaemonConfig with file values applied over defaults

        Raises:
            ConfigError: On unknown keys or values of the wrong type
        """
        data = dict(data)
        labels = data.get("priority_labels")
        if isinstance(labels, str):
            data["priority_labels"] = [
                label.strip() for label in labels.split(",") if label.strip()
            ]
        runtime = sorted(set(data) & RUNTIME_FIELDS)
        if runtime:
            raise ConfigError(f"Unknown config key(s): {', '.join(runtime)}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config: {describe_errors(e)}") from e

    @classmethod
    def from_file(cls, path: Path) -> "DaemonConfig":
        """Load config from a JSON file.

        Args:
            path: Path to the daemon config file

        Raises:
            ConfigError: If the file is missing, not valid JSON, or malformed
        """
        if not path.exists():
            raise ConfigError(
                f"No config found at {path} - create it with at least "
                '{"watch_label": "ready-to-build"}'
            )
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config root in {path} must be an object")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> "DaemonConfig":
        """Load config with environment variable overrides.

        The config file is read when config_path is given. Environment
        variables are applied afterwards.

        Environment variables:
            SHIPYARD_HOME: Override state_dir (default: ~/.shipyard)
            SHIPYARD_POLL_INTERVAL: Override poll_interval
            SHIPYARD_MAX_PARALLEL: Override max_parallel
            SHIPYARD_WEBHOOK_URL: Override notifications.webhook_url
            SLACK_WEBHOOK: Override notifications.slack_webhook
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        config = cls.from_file(config_path) if config_path is not None else cls()

        try:
            if "SHIPYARD_POLL_INTERVAL" in os.environ:
                config.poll_interval = int(os.environ["SHIPYARD_POLL_INTERVAL"])
            if "SHIPYARD_MAX_PARALLEL" in os.environ:
                config.max_parallel = int(os.environ["SHIPYARD_MAX_PARALLEL"])
        except ValueError as e:
            raise ConfigError(f"Invalid numeric environment override: {e}") from e

        if os.getenv("SHIPYARD_WEBHOOK_URL"):
            config.notifications.webhook_url = os.environ["SHIPYARD_WEBHOOK_URL"]
        if os.getenv("SLACK_WEBHOOK"):
            config.notifications.slack_webhook = os.environ["SLACK_WEBHOOK"]

        return config

    def to_dict(self) -> dict[str, Any]:
        """Serialize the file-backed settings (used for the state snapshot)."""
        return {
            "watch_label": self.watch_label,
            "poll_interval": self.poll_interval,
            "max_parallel": self.max_parallel,
            "pipeline_template": self.pipeline_template,
            "model": self.model,
            "base_branch": self.base_branch,
        }
