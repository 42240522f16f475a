from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Protocol, Tuple

from notifyhub.config import TemplateConfig
from notifyhub.errors import ValidationError


@dataclass(frozen=True)
class RenderedTemplate:
    subject: str
    body: str


class TemplateRenderer(Protocol):
    def render(self, template_name: str, variables: Mapping[str, Any]) -> RenderedTemplate:
        ...


class DefaultTemplateRenderer:
    """Plain-text account emails: confirm, reset and welcome."""

    def __init__(self, config: TemplateConfig) -> None:
        self._config = config
        self._templates: Dict[str, Tuple[Tuple[str, ...], Callable[[Mapping[str, Any]], RenderedTemplate]]] = {
            "confirm": (("token",), self._confirm),
            "reset": (("code",), self._reset),
            "welcome": ((), self._welcome),
        }

    @property
    def template_names(self) -> Tuple[str, ...]:
        return tuple(self._templates)

    def render(self, template_name: str, variables: Mapping[str, Any]) -> RenderedTemplate:
        entry = self._templates.get(template_name)
        if entry is None:
            raise ValidationError(
                f"Unknown email template '{template_name}'",
                details={"available": sorted(self._templates)},
            )
        required, builder = entry
        missing = [name for name in required if not variables.get(name)]
        if missing:
            raise ValidationError(
                f"Template '{template_name}' requires: {', '.join(missing)}",
                details={"missing": missing},
            )
        return builder(variables)

    def _footer(self) -> str:
        if self._config.support_email:
            return f"\n\nQuestions? Contact us at {self._config.support_email}."
        return ""

    def _confirm(self, variables: Mapping[str, Any]) -> RenderedTemplate:
        link = f"{self._config.frontend_url.rstrip('/')}/confirm-account?token={variables['token']}"
        body = (
            f"Welcome to {self._config.app_name}!\n\n"
            f"Please confirm your email address by opening the link below:\n{link}\n\n"
            "If you did not create an account, you can ignore this message."
        )
        return RenderedTemplate(f"Confirm your email address - {self._config.app_name}", body + self._footer())

    def _reset(self, variables: Mapping[str, Any]) -> RenderedTemplate:
        body = (
            f"A password reset was requested for {variables.get('email') or 'your account'}.\n\n"
            f"Your reset code is: {variables['code']}\n\n"
            "If you did not request this, no action is needed."
        )
        return RenderedTemplate(f"Password reset code - {self._config.app_name}", body + self._footer())

    def _welcome(self, variables: Mapping[str, Any]) -> RenderedTemplate:
        name = variables.get("first_name") or "there"
        link = f"{self._config.frontend_url.rstrip('/')}/dashboard"
        body = (
            f"Hi {name},\n\n"
            f"Your {self._config.app_name} account is ready. Start here:\n{link}"
        )
        return RenderedTemplate(f"Welcome to {self._config.app_name}", body + self._footer())
