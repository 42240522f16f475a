from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


def _to_optional_str(value: Any) -> Optional[str]:
    if value in (None, "", "null"):
        return None
    return str(value).strip() or None


@dataclass
class DatabaseConfig:
    engine: str
    name: str
    path: Path
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(
            engine=data.get("type", "sqlite"),
            name=data.get("name", "notifyhub.db"),
            path=Path(data.get("path", "data")),
            url=_to_optional_str(data.get("url")),
        )


@dataclass
class UserDirectoryConfig:
    base_url: Optional[str] = None
    timeout: float = 10.0
    api_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserDirectoryConfig":
        return cls(
            base_url=_to_optional_str(data.get("base_url") or os.getenv("DATA_SERVICE_URL")),
            timeout=float(data.get("timeout", 10.0)),
            api_key=_to_optional_str(data.get("api_key")),
        )


@dataclass
class TemplateConfig:
    frontend_url: str = "http://localhost:3000"
    app_name: str = "notifyhub"
    support_email: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateConfig":
        return cls(
            frontend_url=str(data.get("frontend_url") or os.getenv("FRONTEND_URL") or "http://localhost:3000"),
            app_name=str(data.get("app_name", "notifyhub")),
            support_email=_to_optional_str(data.get("support_email")),
        )


@dataclass
class EmailChannelConfig:
    smtp_host: Optional[str]
    smtp_port: int
    username: Optional[str]
    password: Optional[str]
    from_address: Optional[str]
    from_name: Optional[str] = None
    use_tls: bool = True
    timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailChannelConfig":
        return cls(
            smtp_host=_to_optional_str(data.get("smtp_host") or os.getenv("SMTP_HOST")),
            smtp_port=int(data.get("smtp_port", 587)),
            username=_to_optional_str(data.get("username")),
            password=_to_optional_str(data.get("password") or os.getenv("SMTP_PASSWORD")),
            from_address=_to_optional_str(data.get("from_address")),
            from_name=_to_optional_str(data.get("from_name")),
            use_tls=bool(data.get("use_tls", True)),
            timeout=float(data.get("timeout", 10.0)),
        )


@dataclass
class SmsChannelConfig:
    provider: str
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None
    status_callback: Optional[str] = None
    username: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmsChannelConfig":
        return cls(
            provider=str(data.get("provider", "twilio")).strip().lower(),
            account_sid=_to_optional_str(data.get("account_sid") or os.getenv("TWILIO_SID")),
            auth_token=_to_optional_str(data.get("auth_token") or os.getenv("TWILIO_AUTH")),
            from_number=_to_optional_str(data.get("from_number") or os.getenv("TWILIO_PHONE")),
            status_callback=_to_optional_str(data.get("status_callback")),
            username=_to_optional_str(data.get("username")),
            api_key=_to_optional_str(data.get("api_key")),
            timeout=float(data.get("timeout", 10.0)),
        )


@dataclass
class PushChannelConfig:
    project_id: Optional[str]
    access_token: Optional[str]
    validate_on_register: bool = True
    timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushChannelConfig":
        return cls(
            project_id=_to_optional_str(data.get("project_id") or os.getenv("FCM_PROJECT_ID")),
            access_token=_to_optional_str(data.get("access_token") or os.getenv("FCM_ACCESS_TOKEN")),
            validate_on_register=bool(data.get("validate_on_register", True)),
            timeout=float(data.get("timeout", 10.0)),
        )


@dataclass
class ChannelsConfig:
    email: Optional[EmailChannelConfig] = None
    sms: Optional[SmsChannelConfig] = None
    push: Optional[PushChannelConfig] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelsConfig":
        def enabled(section: Any) -> bool:
            return isinstance(section, dict) and bool(section.get("enabled", True))

        email_conf = data.get("email")
        sms_conf = data.get("sms")
        push_conf = data.get("push")
        return cls(
            email=EmailChannelConfig.from_dict(email_conf) if enabled(email_conf) else None,
            sms=SmsChannelConfig.from_dict(sms_conf) if enabled(sms_conf) else None,
            push=PushChannelConfig.from_dict(push_conf) if enabled(push_conf) else None,
        )


@dataclass
class NotifyhubConfig:
    database: DatabaseConfig
    api_key: Optional[str] = None
    default_country_code: str = "33"
    page_limit_max: int = 100
    log_level: str = "INFO"
    users: UserDirectoryConfig = field(default_factory=UserDirectoryConfig)
    templates: TemplateConfig = field(default_factory=TemplateConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotifyhubConfig":
        country_code = str(data.get("default_country_code", "33")).strip().lstrip("+")
        if not country_code.isdigit():
            raise ValueError(f"Invalid default_country_code: {data.get('default_country_code')!r}")
        return cls(
            database=DatabaseConfig.from_dict(data.get("database") or {}),
            api_key=_to_optional_str(data.get("api_key") or os.getenv("NOTIFYHUB_API_KEY")),
            default_country_code=country_code,
            page_limit_max=max(1, int(data.get("page_limit_max", 100))),
            log_level=str(data.get("log_level", "INFO")),
            users=UserDirectoryConfig.from_dict(data.get("users") or {}),
            templates=TemplateConfig.from_dict(data.get("templates") or {}),
        )


@dataclass
class AppConfig:
    notifyhub: NotifyhubConfig
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Dict]) -> "AppConfig":
        return cls(
            notifyhub=NotifyhubConfig.from_dict(data["notifyhub"]),
            channels=ChannelsConfig.from_dict(data.get("channels") or {}),
        )


def app_config(file_path: str) -> AppConfig:
    with open(file_path, "r", encoding="utf-8") as file:
        config_dict = yaml.safe_load(file)
    return AppConfig.from_dict(config_dict)
