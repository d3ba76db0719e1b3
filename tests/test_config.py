"""Unit tests for settings loading and validation."""

import pytest
import yaml

from cloudflare_dns.config import Settings, load_config_file, load_settings, validate_settings

REQUIRED = {"CF_API_KEY": "key", "CF_API_EMAIL": "ops@example.com", "CONFIG_PATH": ""}


def test_defaults() -> None:
    settings = load_settings(dict(REQUIRED))

    assert settings.cf_api_base_url == "https://api.cloudflare.com/client/v4"
    assert settings.annotation_prefix == "estafette.io"
    assert settings.legacy_annotation_prefix == "travix.io/kube-"
    assert settings.watch_kinds == ("services", "ingresses")
    assert settings.watch_namespace == ""
    assert settings.watch_backoff_seconds == 30
    assert settings.sweep_interval_seconds == 900
    assert settings.sync_mode == "watch"
    assert settings.metrics_listen_address == ":9101"
    assert validate_settings(settings) == []


def test_environment_overrides() -> None:
    environ = dict(
        REQUIRED,
        ANNOTATION_PREFIX="example.org",
        WATCH_KINDS="Services",
        WATCH_NAMESPACE="shop",
        SWEEP_INTERVAL_SECONDS="60",
        SYNC_MODE="ONCE",
    )

    settings = load_settings(environ)

    assert settings.annotation_prefix == "example.org"
    assert settings.watch_kinds == ("services",)
    assert settings.watch_namespace == "shop"
    assert settings.sweep_interval_seconds == 60
    assert settings.sync_mode == "once"


def test_yaml_file_is_read_and_environment_wins(tmp_path) -> None:
    config_file = tmp_path / "cloudflare-dns.yaml"
    config_file.write_text(
        yaml.dump(
            {
                "annotation_prefix": "file.example.org",
                "watch_kinds": ["ingresses"],
                "sweep_interval_seconds": 120,
            }
        )
    )
    environ = dict(REQUIRED, CONFIG_PATH=str(config_file), SWEEP_INTERVAL_SECONDS="30")

    settings = load_settings(environ)

    assert settings.annotation_prefix == "file.example.org"
    assert settings.watch_kinds == ("ingresses",)
    assert settings.sweep_interval_seconds == 30


def test_missing_config_file_yields_no_overrides(tmp_path) -> None:
    assert load_config_file(str(tmp_path / "missing.yaml")) == {}


def test_malformed_config_file_is_ignored(tmp_path) -> None:
    config_file = tmp_path / "bad.yaml"
    config_file.write_text("annotation_prefix: [unclosed\n")

    assert load_config_file(str(config_file)) == {}


def test_non_mapping_config_file_is_ignored(tmp_path) -> None:
    config_file = tmp_path / "list.yaml"
    config_file.write_text("- services\n- ingresses\n")

    assert load_config_file(str(config_file)) == {}


def test_non_integer_interval_raises() -> None:
    with pytest.raises(ValueError, match="WATCH_BACKOFF_SECONDS must be an integer"):
        load_settings(dict(REQUIRED, WATCH_BACKOFF_SECONDS="soon"))


class TestValidateSettings:
    def test_credentials_are_required(self) -> None:
        errors = validate_settings(Settings())

        assert any(e.startswith("CF_API_KEY is required") for e in errors)
        assert any(e.startswith("CF_API_EMAIL is required") for e in errors)

    def test_reports_every_problem(self) -> None:
        settings = Settings(
            cf_api_key="key",
            cf_api_email="ops@example.com",
            annotation_prefix="",
            watch_kinds=("services", "pods"),
            sync_mode="sometimes",
            sweep_interval_seconds=0,
            metrics_listen_address="localhost",
        )

        errors = validate_settings(settings)

        assert "ANNOTATION_PREFIX cannot be empty" in errors
        assert any("Unsupported kind in WATCH_KINDS: pods" in e for e in errors)
        assert any(e.startswith("Invalid SYNC_MODE: sometimes") for e in errors)
        assert "SWEEP_INTERVAL_SECONDS must be > 0, got: 0" in errors
        assert any(e.startswith("METRICS_LISTEN_ADDRESS") for e in errors)
        assert len(errors) == 5

    def test_empty_kinds_rejected(self) -> None:
        settings = Settings(cf_api_key="key", cf_api_email="ops@example.com", watch_kinds=())

        assert any(e.startswith("WATCH_KINDS must name") for e in validate_settings(settings))
