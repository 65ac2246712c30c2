"""Configuration for stalerefs runs.

Two layers:

- :class:`RunConfig` — what the caller asks for: which source, which
  cutoff, dry-run or destructive, which token.
- :class:`EngineSettings` — tunables (retry budget, page limits, protected
  branch globs, worker count). Resolved from defaults, then an optional
  YAML file validated against :data:`SETTINGS_SCHEMA`, then ``STALEREFS_*``
  environment variables.

A ``.env`` file in the working directory is loaded first (without
overriding the real environment) unless ``STALEREFS_LOAD_DOTENV=0``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import find_dotenv, load_dotenv
from jsonschema import Draft202012Validator

from stalerefs.engine.candidates import RunMode
from stalerefs.engine.core import parse_cutoff
from stalerefs.engine.errors import ConfigError
from stalerefs.engine.retry import RetryPolicy

LOG = logging.getLogger("stalerefs.config")

TOKEN_ENV_VARS = ("STALEREFS_TOKEN", "TOKEN")


SETTINGS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "retry": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "max_attempts": {"type": "integer", "minimum": 1},
                "backoff_base_seconds": {"type": "number", "minimum": 0},
                "backoff_multiplier": {"type": "number", "minimum": 1},
                "backoff_max_seconds": {"type": "number", "minimum": 0},
            },
        },
        "max_pages": {"type": "integer", "minimum": 1},
        "per_page": {"type": "integer", "minimum": 1, "maximum": 100},
        "request_timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        "max_workers": {"type": "integer", "minimum": 1},
        "protected_branches": {"type": "array", "items": {"type": "string"}},
        "include_forks": {"type": "boolean"},
    },
}


@dataclasses.dataclass(frozen=True)
class EngineSettings:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    max_pages: int = 100
    per_page: int = 100
    request_timeout_seconds: float = 30.0
    max_workers: int = 1
    protected_branches: tuple[str, ...] = ()
    include_forks: bool = False

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_seconds=self.backoff_base_seconds,
            multiplier=self.backoff_multiplier,
            max_seconds=self.backoff_max_seconds,
        )

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "EngineSettings":
        """Build settings from a validated YAML mapping."""
        retry = data.get("retry") or {}
        defaults = EngineSettings()
        return EngineSettings(
            max_attempts=int(retry.get("max_attempts", defaults.max_attempts)),
            backoff_base_seconds=float(
                retry.get("backoff_base_seconds", defaults.backoff_base_seconds)
            ),
            backoff_multiplier=float(
                retry.get("backoff_multiplier", defaults.backoff_multiplier)
            ),
            backoff_max_seconds=float(
                retry.get("backoff_max_seconds", defaults.backoff_max_seconds)
            ),
            max_pages=int(data.get("max_pages", defaults.max_pages)),
            per_page=int(data.get("per_page", defaults.per_page)),
            request_timeout_seconds=float(
                data.get("request_timeout_seconds", defaults.request_timeout_seconds)
            ),
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            protected_branches=tuple(data.get("protected_branches", ())),
            include_forks=bool(data.get("include_forks", defaults.include_forks)),
        )

    def with_env(self, env: Mapping[str, str] | None = None) -> "EngineSettings":
        """Overlay ``STALEREFS_*`` environment variables."""
        env = os.environ if env is None else env

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None:
                return default
            try:
                value = int(raw)
                if value <= 0:
                    raise ValueError("must be positive")
                return value
            except ValueError:
                LOG.warning("Invalid %s=%r; using %s", name, raw, default)
                return default

        def _float(name: str, default: float) -> float:
            raw = env.get(name)
            if raw is None:
                return default
            try:
                value = float(raw)
                if value < 0:
                    raise ValueError("must be non-negative")
                return value
            except ValueError:
                LOG.warning("Invalid %s=%r; using %s", name, raw, default)
                return default

        protected = self.protected_branches
        raw_protected = env.get("STALEREFS_PROTECTED_BRANCHES")
        if raw_protected is not None:
            protected = tuple(p.strip() for p in raw_protected.split(",") if p.strip())

        return dataclasses.replace(
            self,
            max_attempts=_int("STALEREFS_MAX_ATTEMPTS", self.max_attempts),
            backoff_base_seconds=_float(
                "STALEREFS_BACKOFF_BASE_SECONDS", self.backoff_base_seconds
            ),
            max_pages=_int("STALEREFS_MAX_PAGES", self.max_pages),
            max_workers=_int("STALEREFS_MAX_WORKERS", self.max_workers),
            protected_branches=protected,
        )


def validate_settings(data: Any) -> None:
    validator = Draft202012Validator(SETTINGS_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        raise ConfigError(
            [f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors]
        )


def load_settings_file(path: str | Path) -> EngineSettings:
    """Load and validate a YAML settings file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError([f"cannot read {path}: {exc}"]) from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError([f"invalid YAML in {path}: {exc}"]) from exc
    if data is None:
        data = {}
    validate_settings(data)
    return EngineSettings.from_mapping(data)


def load_dotenv_if_enabled(env: Mapping[str, str] | None = None) -> None:
    env = os.environ if env is None else env
    if env.get("STALEREFS_LOAD_DOTENV", "1").lower() not in ("1", "true", "yes"):
        return
    path = find_dotenv(usecwd=True)
    if path:
        load_dotenv(path, override=False)
        LOG.debug("Loaded environment from %s", path)


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Resolve settings: defaults, YAML file, then environment."""
    env = os.environ if env is None else env
    path = path or env.get("STALEREFS_CONFIG")
    settings = load_settings_file(path) if path else EngineSettings()
    return settings.with_env(env)


def resolve_token(explicit: str | None, env: Mapping[str, str] | None = None) -> str | None:
    if explicit:
        return explicit
    env = os.environ if env is None else env
    for name in TOKEN_ENV_VARS:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


@dataclasses.dataclass(frozen=True)
class RunConfig:
    """Caller-facing run configuration consumed by the engine."""

    source: str
    cutoff: datetime
    mode: RunMode = RunMode.DRY_RUN
    token: str | None = dataclasses.field(default=None, repr=False)

    @staticmethod
    def build(
        source: str,
        since: str | datetime,
        *,
        delete: bool = False,
        token: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "RunConfig":
        return RunConfig(
            source=source,
            cutoff=parse_cutoff(since),
            mode=RunMode.from_flag(delete),
            token=resolve_token(token, env),
        )
