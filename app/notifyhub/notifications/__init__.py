"""Notification dispatch, record storage, push targets and delivery reconciliation."""

from .reconciler import DeliveryReconciler, ReconcileOutcome, ReconcileResult
from .service import DispatchEngine, build_adapters
from .store import NotificationStore
from .targets import TokenLifecycleManager
from .templates import DefaultTemplateRenderer, RenderedTemplate, TemplateRenderer

__all__ = [
    "DefaultTemplateRenderer",
    "DeliveryReconciler",
    "DispatchEngine",
    "NotificationStore",
    "ReconcileOutcome",
    "ReconcileResult",
    "RenderedTemplate",
    "TemplateRenderer",
    "TokenLifecycleManager",
    "build_adapters",
]
