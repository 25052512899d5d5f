"""Courier configuration management."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from courier.errors import ValidationError

COURIER_HOME = Path(os.environ.get("COURIER_HOME", str(Path.home() / ".courier")))
COURIER_CONFIG = COURIER_HOME / "config.json"
COURIER_LOGS = COURIER_HOME / "logs"


@dataclass
class QueueConfig:
    """Job queue storage and recovery."""

    root: str = str(COURIER_HOME / "jobs")
    stale_after_seconds: int = 60 * 60
    finished_retention_days: int = 7


@dataclass
class WorkerConfig:
    """Worker pool limits and the agent executable."""

    max_concurrent: int = 3
    task_timeout_seconds: float = 60 * 60
    kill_grace_seconds: float = 5.0
    tick_interval_seconds: float = 1.0
    agent_command: list[str] = field(
        default_factory=lambda: ["claude", "--dangerously-skip-permissions"]
    )
    workspace: str = ""


@dataclass
class SessionConfig:
    """Session code store and expiry sweep."""

    path: str = str(COURIER_HOME / "data" / "sessions.json")
    max_age_seconds: int = 24 * 60 * 60
    sweep_interval_seconds: int = 60 * 60


@dataclass
class WebhookConfig:
    """Inbound HTTP gateway."""

    host: str = "127.0.0.1"
    port: int = 3000
    secret: str = ""
    agent_id: str = "dev-agent"
    allow_unsigned: bool = True
    heartbeat_interval_seconds: int = 30


@dataclass
class CallbackConfig:
    """Outbound signed callbacks."""

    api_url: str = "https://api.example.com"
    max_retries: int = 3
    timeout_seconds: float = 10.0


@dataclass
class SlackConfig:
    """Slack chat channel settings."""

    bot_token: str = ""
    app_token: str = ""
    enabled: bool = False


@dataclass
class CourierConfig:
    """Top-level Courier configuration."""

    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    callback: CallbackConfig = field(default_factory=CallbackConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    commands_path: str = ""

    @classmethod
    def load(cls, path: Path | None = None) -> "CourierConfig":
        """Load config from disk or return defaults.

        Environment variables override file values.
        """
        config = cls()
        config_path = path or COURIER_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            for section in ("queue", "worker", "sessions", "webhook", "callback", "slack"):
                if section in data:
                    target = getattr(config, section)
                    for k, v in data[section].items():
                        setattr(target, k, v)
            if "commands_path" in data:
                config.commands_path = data["commands_path"]

        config._apply_env(os.environ)
        return config

    def _apply_env(self, env) -> None:
        queue_dir = env.get("COURIER_QUEUE_DIR")
        if queue_dir:
            self.queue.root = queue_dir
        if env.get("COURIER_MAX_CONCURRENT"):
            self.worker.max_concurrent = _env_int(env, "COURIER_MAX_CONCURRENT")
        if env.get("COURIER_TASK_TIMEOUT"):
            self.worker.task_timeout_seconds = _env_int(env, "COURIER_TASK_TIMEOUT")
        if env.get("COURIER_WEBHOOK_PORT"):
            self.webhook.port = _env_int(env, "COURIER_WEBHOOK_PORT")
        if env.get("COURIER_WEBHOOK_SECRET"):
            self.webhook.secret = env["COURIER_WEBHOOK_SECRET"]
        if env.get("COURIER_AGENT_ID"):
            self.webhook.agent_id = env["COURIER_AGENT_ID"]
        if env.get("COURIER_API_URL"):
            self.callback.api_url = env["COURIER_API_URL"]
        if env.get("COURIER_ALLOW_UNSIGNED"):
            self.webhook.allow_unsigned = env["COURIER_ALLOW_UNSIGNED"] not in ("0", "false", "no")

        slack_bot = env.get("COURIER_SLACK_BOT_TOKEN")
        slack_app = env.get("COURIER_SLACK_APP_TOKEN")
        if slack_bot:
            self.slack.bot_token = slack_bot
        if slack_app:
            self.slack.app_token = slack_app

    def set_value(self, key: str, value: str) -> None:
        """Set a dotted key (e.g. ``worker.max_concurrent``) from a string."""
        section_name, _, attr = key.partition(".")
        if not attr:
            raise ValidationError(f"Key must be section.name: {key}")
        section = getattr(self, section_name, None)
        if section is None or not hasattr(section, attr):
            raise ValidationError(f"Unknown config key: {key}")
        current = getattr(section, attr)
        if isinstance(current, bool):
            parsed = value.lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            parsed = int(value)
        elif isinstance(current, float):
            parsed = float(value)
        elif isinstance(current, list):
            parsed = value.split()
        else:
            parsed = value
        setattr(section, attr, parsed)

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk."""
        config_path = path or COURIER_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(asdict(self), indent=2))


def _env_int(env, name: str) -> int:
    raw = env[name]
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from e


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, for the daily log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(debug: bool = False, log_dir: Path | None = None) -> None:
    """Console logging plus an optional JSON file per day."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if log_dir is None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{datetime.now().strftime('%Y-%m-%d')}.log"
    handler = logging.FileHandler(log_file)
    handler.setFormatter(JsonLogFormatter())
    logging.getLogger().addHandler(handler)


def ensure_courier_home() -> None:
    """Create Courier home directory structure."""
    COURIER_HOME.mkdir(parents=True, exist_ok=True)
    COURIER_LOGS.mkdir(parents=True, exist_ok=True)
