"""Configuration loading, environment overrides and logging setup.

The pipeline configuration lives in a YAML or JSON file that is written by
an external tool; this module only reads it. Validation failures of any
kind (unreadable file, non-mapping document, schema violations, malformed
``success_rule``) are reported as ``ConfigError``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError
import yaml

from invite_runner.errors import ConfigError
from invite_runner.models import PipelineConfig, ProxyMode

DEFAULT_CONFIG_PATH = "config/api.config.yaml"
CONFIG_PATH_ENV = "INVITE_RUNNER_CONFIG"

# ---------------------------------------------------------------------------
# File loading
# ---------------------------------------------------------------------------


def resolve_config_path(path: str | os.PathLike[str] | None = None) -> Path:
    """Return *path*, else ``$INVITE_RUNNER_CONFIG``, else the default path."""
    return Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _read_document(file_path: Path) -> Any:
    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def load_config(path: str | os.PathLike[str] | None = None) -> PipelineConfig:
    """Load and validate the pipeline configuration file.

    ``.json`` files are parsed as JSON, anything else as YAML. Environment
    overrides are applied after validation.

    Args:
        path: Config file path; see ``resolve_config_path()``.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file is missing, unparseable, not a mapping,
            lacks ``login``/``invite``, or fails validation.
    """
    file_path = resolve_config_path(path)
    if not file_path.exists():
        msg = f"Missing config file: {file_path}"
        raise ConfigError(msg)

    try:
        data = _read_document(file_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        msg = f"Cannot read config file {file_path}: {exc}"
        raise ConfigError(msg) from exc

    return parse_config(data, source=str(file_path))


def parse_config(data: Any, *, source: str = "config") -> PipelineConfig:
    """Validate an already-parsed config document.

    Args:
        data: The parsed document.
        source: Label used in error messages.

    Returns:
        The validated configuration with environment overrides applied.

    Raises:
        ConfigError: If the document is invalid.
    """
    if not isinstance(data, dict):
        msg = f"{source} must contain a mapping, got {type(data).__name__}"
        raise ConfigError(msg)
    if not data.get("login") or not data.get("invite"):
        msg = f"{source} must include both login and invite sections"
        raise ConfigError(msg)

    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid {source}: {exc}"
        raise ConfigError(msg) from exc

    return apply_env_overrides(config)


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, tuple[str, ...]] = {
    "INVITE_RUNNER_LOG_LEVEL": ("log_level",),
    "INVITE_RUNNER_PROXY_MODE": ("proxy", "mode"),
    "INVITE_RUNNER_PROVIDER_TOKEN": ("provider", "token"),
}
"""Maps environment variable names to (section, field) paths in PipelineConfig."""

_DEFAULTS: dict[tuple[str, ...], Any] = {
    ("log_level",): "INFO",
    ("proxy", "mode"): ProxyMode.DIRECT,
    ("provider", "token"): "",
}


def apply_env_overrides(config: PipelineConfig) -> PipelineConfig:
    """Apply ``INVITE_RUNNER_*`` environment overrides to *config*.

    A variable only overrides a field still at its default value; values
    set in the config file win. Invalid values (an unknown proxy mode) are
    ignored.

    Args:
        config: The validated configuration.

    Returns:
        A new configuration with the overrides applied, or *config* itself
        when nothing changed.
    """
    updated = config
    for env_var, field_path in _ENV_FIELD_MAP.items():
        raw = os.environ.get(env_var)
        if raw is None or not raw.strip():
            continue
        current: Any = updated
        for name in field_path:
            current = getattr(current, name)
        if current != _DEFAULTS[field_path]:
            continue
        parsed = _parse_env_value(field_path, raw.strip())
        if parsed is None:
            continue
        updated = _replace(updated, field_path, parsed)
    return updated


def _parse_env_value(field_path: tuple[str, ...], raw: str) -> Any:
    if field_path == ("proxy", "mode"):
        try:
            return ProxyMode("gateway" if raw == "scrape_do" else raw)
        except ValueError:
            return None
    return raw


def _replace(config: PipelineConfig, field_path: tuple[str, ...], value: Any) -> PipelineConfig:
    if len(field_path) == 1:
        return config.model_copy(update={field_path[0]: value})
    section_name, field_name = field_path
    section = getattr(config, section_name)
    return config.model_copy(
        update={section_name: section.model_copy(update={field_name: value})}
    )


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


def configure_logging(config: PipelineConfig) -> None:
    """Configure the ``invite_runner`` logger.

    Adds a console handler and, when ``log_file`` is set, a file handler.
    Idempotent: repeated calls do not duplicate handlers.

    Args:
        config: Configuration providing ``log_level`` and ``log_file``.
    """
    app_logger = logging.getLogger("invite_runner")
    app_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in app_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        app_logger.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == os.path.abspath(config.log_file)
            for h in app_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            app_logger.addHandler(file_handler)
