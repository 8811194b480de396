from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_PORT = 1024
MAX_PORT = 65535


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3000
    web_dir: Path = Path("public")
    allowed_origin_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1"])
    allow_missing_origin: bool = True
    """Accept links without an Origin header (curl, wscat, scripts).

    Browsers always send Origin on WebSocket upgrades, so this only relaxes the
    check for non-browser clients. Set to false to require a listed origin."""

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if value < MIN_PORT or value > MAX_PORT:
            raise ValueError(f"port must be between {MIN_PORT} and {MAX_PORT}")
        return value


class LimitsConfig(BaseModel):
    max_connections: int = Field(default=3, ge=1)
    max_input_length: int = Field(default=10_000, ge=1)
    max_buffer_size: int = Field(default=1024 * 1024, ge=1)
    max_preview_length: int = Field(default=100, ge=1)
    max_preview_lines: int = Field(default=100, ge=1)


class CLIConfig(BaseModel):
    command: str = "claude"
    working_dir: Path | None = None

    @field_validator("command")
    @classmethod
    def _validate_command(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("cli.command must not be empty")
        return cleaned


class ProjectsConfig(BaseModel):
    base_dir: Path = Path("~/.claude/projects")
    default_project_dir: Path | None = None

    @property
    def resolved_base_dir(self) -> Path:
        return self.base_dir.expanduser().resolve()

    @property
    def resolved_default_dir(self) -> Path:
        if self.default_project_dir is not None:
            return self.default_project_dir.expanduser().resolve()
        return self.resolved_base_dir / "default"

    @property
    def default_project_name(self) -> str | None:
        if self.default_project_dir is None:
            return None
        return self.resolved_default_dir.name


ENV_PREFIX = "CCRELAY_"
ENV_NESTED_DELIMITER = "__"
CONFIG_SECTION = "ccrelay"


class RelaySettings(BaseSettings):
    server: ServerConfig = Field(default_factory=ServerConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    cli: CLIConfig = Field(default_factory=CLIConfig)
    projects: ProjectsConfig = Field(default_factory=ProjectsConfig)
    log_level: str = "INFO"
    json_logs: bool = False

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter=ENV_NESTED_DELIMITER,
        extra="ignore",
    )


def _env_overrides(environ: Mapping[str, str]) -> dict[str, object]:
    """Collect ``CCRELAY_SECTION__FIELD=value`` variables into a nested mapping.

    Values are parsed as YAML scalars so ``false`` and ``5`` arrive typed; an
    empty value stays an empty string.
    """
    overrides: dict[str, object] = {}
    for key, raw_value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        *parents, leaf = key[len(ENV_PREFIX) :].lower().split(ENV_NESTED_DELIMITER)
        parsed = yaml.safe_load(raw_value)
        target = overrides
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                child = target[part] = {}
            target = child
        target[leaf] = raw_value if parsed is None else parsed
    return overrides


def _merge(base: Mapping[str, object], overrides: Mapping[str, object]) -> dict[str, object]:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: str | Path = "config/ccrelay.yaml",
    environ: Mapping[str, str] | None = None,
) -> RelaySettings:
    """Build settings from a YAML file, with ``CCRELAY_*`` variables taking precedence.

    The file holds either a ``ccrelay:`` section or the settings mapping itself.
    Ceilings are read here once; the running relay never reloads them.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"config file not found: {config_path}")

    loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError("config file must contain a top-level mapping")

    section = loaded.get(CONFIG_SECTION, loaded)
    if not isinstance(section, dict):
        raise ValueError(f"{CONFIG_SECTION} config section must be a mapping")

    overrides = _env_overrides(os.environ if environ is None else environ)
    return RelaySettings.model_validate(_merge(section, overrides))


__all__ = [
    "CLIConfig",
    "LimitsConfig",
    "ProjectsConfig",
    "RelaySettings",
    "ServerConfig",
    "load_config",
]
