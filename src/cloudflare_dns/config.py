"""Controller settings.

Values come from built-in defaults, then an optional YAML file, then
environment variables (highest precedence)::

    CF_API_KEY                 Cloudflare API key (required)
    CF_API_EMAIL               Cloudflare account email (required)
    CF_API_BASE_URL            API base URL (default: https://api.cloudflare.com/client/v4)
    ANNOTATION_PREFIX          Annotation namespace (default: estafette.io)
    LEGACY_ANNOTATION_PREFIX   Prefix of the deprecated annotation aliases
                               (default: travix.io/kube-, empty disables them)
    WATCH_KINDS                Comma-separated kinds: services, ingresses
    WATCH_NAMESPACE            Namespace scope (default: all namespaces)
    WATCH_BACKOFF_SECONDS      Base of the jittered watch reconnect delay (default: 30)
    WATCH_TIMEOUT_SECONDS      Server-side watch timeout (default: 300)
    SWEEP_INTERVAL_SECONDS     Base of the jittered full-sweep interval (default: 900)
    SYNC_MODE                  "watch" or "once" (default: watch)
    METRICS_LISTEN_ADDRESS     Prometheus endpoint (default: :9101)
    LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
    SHUTDOWN_TIMEOUT_SECONDS   Max wait for in-flight work on shutdown (default: 60)
    CONFIG_PATH                YAML settings file (default: /config/cloudflare-dns.yaml)

The YAML file uses the lowercase variable names as keys, e.g.::

    annotation_prefix: estafette.io
    watch_kinds: [services, ingresses]
    sweep_interval_seconds: 600
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from cloudflare_dns.cloudflare import DEFAULT_BASE_URL
from cloudflare_dns.kube import SUPPORTED_KINDS
from cloudflare_dns.metrics import parse_listen_address
from cloudflare_dns.state import DEFAULT_ANNOTATION_PREFIX, DEFAULT_LEGACY_ANNOTATION_PREFIX

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/cloudflare-dns.yaml"
SYNC_MODES = ("watch", "once")


@dataclass(frozen=True)
class Settings:
    cf_api_key: str = ""
    cf_api_email: str = ""
    cf_api_base_url: str = DEFAULT_BASE_URL
    annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX
    legacy_annotation_prefix: str = DEFAULT_LEGACY_ANNOTATION_PREFIX
    watch_kinds: Tuple[str, ...] = SUPPORTED_KINDS
    watch_namespace: str = ""
    watch_backoff_seconds: int = 30
    watch_timeout_seconds: int = 300
    sweep_interval_seconds: int = 900
    sync_mode: str = "watch"
    metrics_listen_address: str = ":9101"
    log_level: str = "INFO"
    shutdown_timeout_seconds: int = 60


_INT_FIELDS = {
    "watch_backoff_seconds",
    "watch_timeout_seconds",
    "sweep_interval_seconds",
    "shutdown_timeout_seconds",
}


def _parse_kinds(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value or "").split(",")
    return tuple(k.strip().lower() for k in items if k.strip())


def _coerce(name: str, value: Any) -> Any:
    if name == "watch_kinds":
        return _parse_kinds(value)
    if name in _INT_FIELDS:
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{name.upper()} must be an integer, got: {value!r}") from e
    if name in {"sync_mode"}:
        return str(value).strip().lower()
    return str(value if value is not None else "").strip()


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the optional YAML settings file; a missing file yields no overrides."""
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}
    if not data:
        return {}
    if not isinstance(data, dict):
        logger.error(f"Config file {config_path} must contain a mapping, ignoring it")
        return {}
    logger.info(f"Loaded settings from {config_path}")
    return data


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    file_values = load_config_file(environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH))

    values: Dict[str, Any] = {}
    for f in fields(Settings):
        if f.name.upper() in environ:
            values[f.name] = _coerce(f.name, environ[f.name.upper()])
        elif f.name in file_values:
            values[f.name] = _coerce(f.name, file_values[f.name])
    return Settings(**values)


def validate_settings(settings: Settings) -> List[str]:
    """Return every configuration error; empty when the settings are usable."""
    errors = []

    if not settings.cf_api_key:
        errors.append(
            "CF_API_KEY is required. Please set CF_API_KEY environment variable to your Cloudflare API key."
        )
    if not settings.cf_api_email:
        errors.append(
            "CF_API_EMAIL is required. Please set CF_API_EMAIL environment variable to your Cloudflare API email."
        )
    if not settings.annotation_prefix:
        errors.append("ANNOTATION_PREFIX cannot be empty")

    if not settings.watch_kinds:
        errors.append(f"WATCH_KINDS must name at least one of: {', '.join(SUPPORTED_KINDS)}")
    for kind in settings.watch_kinds:
        if kind not in SUPPORTED_KINDS:
            errors.append(f"Unsupported kind in WATCH_KINDS: {kind}. Supported: {', '.join(SUPPORTED_KINDS)}")

    if settings.sync_mode not in SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")

    for name in sorted(_INT_FIELDS):
        if getattr(settings, name) <= 0:
            errors.append(f"{name.upper()} must be > 0, got: {getattr(settings, name)}")

    try:
        parse_listen_address(settings.metrics_listen_address)
    except ValueError as e:
        errors.append(f"METRICS_LISTEN_ADDRESS: {e}")

    return errors
