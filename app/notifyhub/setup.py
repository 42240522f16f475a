from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from notifyhub.clients.users import UserDirectoryClient, build_user_directory
from notifyhub.config import AppConfig
from notifyhub.data.db import initialize_database
from notifyhub.notifications import (
    DefaultTemplateRenderer,
    DeliveryReconciler,
    DispatchEngine,
    NotificationStore,
    TokenLifecycleManager,
    build_adapters,
)
from notifyhub.models import Channel


logger = logging.getLogger("notifyhub.setup")


@dataclass
class Services:
    store: NotificationStore
    targets: TokenLifecycleManager
    engine: DispatchEngine
    reconciler: DeliveryReconciler
    user_directory: Optional[UserDirectoryClient] = None

    async def close(self) -> None:
        await self.engine.close()
        if self.user_directory is not None:
            await self.user_directory.close()


def _resolve_path(raw_path: str | Path, base_dir: Path) -> Path:
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def initialize_environment(
    config_data: Dict[str, Any],
    base_dir: str | Path = ".",
) -> Tuple[AppConfig, Dict[str, Any]]:
    if not isinstance(config_data, dict):
        raise TypeError("config_data must be a dictionary")

    notifyhub_section = config_data.get("notifyhub")
    if not isinstance(notifyhub_section, dict):
        raise ValueError("config_data missing 'notifyhub' section")

    base_dir_path = Path(base_dir).expanduser().resolve()

    database_section = dict(notifyhub_section.get("database") or {})
    database_dir_path = _resolve_path(database_section.get("path", "data"), base_dir_path)
    if not database_section.get("url"):
        database_dir_path.mkdir(parents=True, exist_ok=True)
    database_section["path"] = str(database_dir_path)

    normalized_config = {
        "notifyhub": {**notifyhub_section, "database": database_section},
        "channels": config_data.get("channels") or {},
    }
    app_config = AppConfig.from_dict(normalized_config)

    resources = {
        "database_dir": database_dir_path,
        "database_file": database_dir_path / app_config.notifyhub.database.name,
        "base_dir": base_dir_path,
    }
    return app_config, resources


async def build_services(
    app_config: AppConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    smtp_send: Optional[Callable[..., Awaitable[Any]]] = None,
) -> Services:
    """Initialise the database and wire the adapters, store and engine together."""
    settings = app_config.notifyhub
    await initialize_database(settings.database)

    adapters = build_adapters(app_config.channels, transport=transport, smtp_send=smtp_send)
    user_directory = build_user_directory(settings.users, transport=transport)
    push_config = app_config.channels.push

    store = NotificationStore()
    targets = TokenLifecycleManager(
        user_directory=user_directory,
        push_adapter=adapters.get(Channel.PUSH),
        validate_on_register=bool(push_config and push_config.validate_on_register),
    )
    engine = DispatchEngine(
        store,
        adapters,
        targets,
        user_directory=user_directory,
        renderer=DefaultTemplateRenderer(settings.templates),
        default_country_code=settings.default_country_code,
    )
    logger.info(
        "Notification services ready",
        extra={"channels": [channel.value for channel in engine.channels]},
    )
    return Services(
        store=store,
        targets=targets,
        engine=engine,
        reconciler=DeliveryReconciler(store),
        user_directory=user_directory,
    )
