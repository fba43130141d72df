"""Notification templating and dispatch."""

from .dispatcher import NotificationDispatcher
from .templates import YamlTemplateResolver

__all__ = [
    "NotificationDispatcher",
    "YamlTemplateResolver",
]
