from __future__ import annotations

from pathlib import Path

import pytest

from notifyhub.config import AppConfig, TemplateConfig, app_config
from notifyhub.errors import ValidationError
from notifyhub.notifications import DefaultTemplateRenderer
from notifyhub.setup import initialize_environment


def test_initialize_environment_resolves_database_path(tmp_path: Path):
    config, resources = initialize_environment(
        {"notifyhub": {"database": {"name": "hub.db", "path": "var/db"}}},
        base_dir=tmp_path,
    )

    assert resources["database_file"] == tmp_path.resolve() / "var" / "db" / "hub.db"
    assert resources["database_dir"].is_dir()
    assert config.notifyhub.database.engine == "sqlite"
    assert config.channels.email is None


def test_initialize_environment_requires_notifyhub_section():
    with pytest.raises(ValueError):
        initialize_environment({"channels": {}})


def test_disabled_channels_are_not_built():
    config = AppConfig.from_dict(
        {
            "notifyhub": {"database": {}},
            "channels": {
                "email": {"enabled": False, "smtp_host": "smtp.example.org"},
                "sms": {"provider": "FreeMobile", "username": "u", "api_key": "k"},
            },
        }
    )

    assert config.channels.email is None
    assert config.channels.sms.provider == "freemobile"
    assert config.channels.push is None


def test_country_code_is_normalized_and_validated():
    config = AppConfig.from_dict({"notifyhub": {"database": {}, "default_country_code": "+44"}})
    assert config.notifyhub.default_country_code == "44"

    with pytest.raises(ValueError):
        AppConfig.from_dict({"notifyhub": {"database": {}, "default_country_code": "FR"}})


def test_api_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("NOTIFYHUB_API_KEY", "from-env")

    config = AppConfig.from_dict({"notifyhub": {"database": {}}})

    assert config.notifyhub.api_key == "from-env"


def test_example_configuration_loads():
    example = Path(__file__).resolve().parents[1] / "app" / "config.example.yaml"

    config = app_config(str(example))

    assert config.channels.sms.provider == "twilio"
    assert config.channels.push.validate_on_register is True


def test_default_templates_render():
    renderer = DefaultTemplateRenderer(TemplateConfig(frontend_url="https://app.example.org/", app_name="Hub"))

    welcome = renderer.render("welcome", {"first_name": "Ada"})
    confirm = renderer.render("confirm", {"token": "t0k"})

    assert welcome.subject == "Welcome to Hub"
    assert "Hi Ada" in welcome.body
    assert "https://app.example.org/confirm-account?token=t0k" in confirm.body


def test_templates_reject_unknown_names_and_missing_variables():
    renderer = DefaultTemplateRenderer(TemplateConfig())

    with pytest.raises(ValidationError):
        renderer.render("newsletter", {})
    with pytest.raises(ValidationError):
        renderer.render("reset", {})
