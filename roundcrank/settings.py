import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from roundcrank.exceptions import ConfigurationError

SETTINGS_FILE = Path("crank_settings.json")
ENV_FILE = Path(".env")
ENV_PREFIX = "CRANK_"


class CrankConfig(BaseModel):
    """
    Explicit crank configuration.
    Built once at startup and handed to every component.
    """
    model_config = ConfigDict(frozen=True)

    rpc_endpoint: str = ""
    authority_key: str = ""
    oracle_endpoint: str = ""
    db_path: str = "roundcrank.db"
    workspace: str = "workspace/default"

    close_window_buffer_seconds: float = Field(default=2.0, ge=0)
    poll_initial_delay_seconds: float = Field(default=2.0, ge=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    max_poll_attempts: int = Field(default=10, ge=1)
    confirm_timeout_seconds: float = Field(default=30.0, gt=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    waiting_duration_seconds: float = Field(default=30, gt=0)
    randomness_grace_seconds: float = Field(default=10, ge=0)
    oracle_stuck_seconds: float = Field(default=50, ge=0)

    observe_interval_seconds: float = Field(default=5.0, gt=0)
    recovery_interval_seconds: float = Field(default=15.0, gt=0)
    retention_interval_seconds: float = Field(default=3600, gt=0)
    scheduler_tick_seconds: float = Field(default=0.25, gt=0)
    job_retention_days: int = Field(default=7, ge=1)
    event_retention_days: int = Field(default=7, ge=1)
    stuck_round_seconds: float = Field(default=300, gt=0)

    dry_run: bool = False

    @model_validator(mode="after")
    def _stuck_after_grace(self):
        if self.oracle_stuck_seconds < self.randomness_grace_seconds:
            raise ValueError("oracle_stuck_seconds must not be shorter than randomness_grace_seconds")
        return self

    @property
    def resolved_oracle_endpoint(self) -> str:
        return self.oracle_endpoint or self.rpc_endpoint

    def require_credentials(self) -> None:
        """Fail fast when the ledger cannot be reached with authority."""
        missing = []
        if not self.rpc_endpoint.strip():
            missing.append(f"{ENV_PREFIX}RPC_ENDPOINT")
        if not self.authority_key.strip():
            missing.append(f"{ENV_PREFIX}AUTHORITY_KEY")
        if missing:
            raise ConfigurationError(f"Missing crank configuration: {', '.join(missing)}")


def load_env(env_file: Path = ENV_FILE) -> None:
    """Simple .env loader to avoid extra dependencies."""
    # Keep tests hermetic: avoid re-injecting host .env values after monkeypatch.delenv.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    if env_file.exists():
        for line in env_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip())


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
        if isinstance(payload, dict):
            return payload
    except (json.JSONDecodeError, OSError):
        return {}
    return {}


def load_config(
    settings_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> CrankConfig:
    """
    Resolves every field as: explicit override -> CRANK_<FIELD> env -> settings file -> default.
    """
    env = os.environ if environ is None else environ
    file_values = _read_json(Path(settings_path) if settings_path else SETTINGS_FILE)

    values: Dict[str, Any] = {}
    for name in CrankConfig.model_fields:
        env_val = env.get(f"{ENV_PREFIX}{name.upper()}")
        if env_val is not None:
            values[name] = env_val
        elif name in file_values:
            values[name] = file_values[name]
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return CrankConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid crank configuration: {exc}") from exc
