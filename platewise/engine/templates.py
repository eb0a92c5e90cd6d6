"""Notification templates and rendering."""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from platewise.engine.personalization import PersonalizationContext
from platewise.utils.constants import NOTIFICATION_TYPES, NotificationType


@dataclass(frozen=True)
class NotificationTemplate:
    """Copy for one notification, with {{placeholder}} variables."""

    id: str
    title: str
    body: str
    link: str


@dataclass(frozen=True)
class TemplateTable:
    """Immutable template lookup, built once at startup and passed around."""

    templates: Mapping[str, NotificationTemplate]
    by_type: Mapping[NotificationType, str]

    def for_type(self, notification_type: NotificationType) -> NotificationTemplate:
        return self.templates[self.by_type[notification_type]]


def build_template_table() -> TemplateTable:
    """Build the default template table."""
    templates = {
        t.id: t
        for t in (
            NotificationTemplate(
                "weight_reminder_v1",
                "Good {{timeOfDay}}, {{displayName}}! ⚖️",
                "Time to log your weight.",
                "platewise://entry",
            ),
            NotificationTemplate(
                "breakfast_v1",
                "Breakfast time, {{displayName}}! 🍳",
                "Had breakfast? Snap a quick photo",
                "platewise://food/capture",
            ),
            NotificationTemplate(
                "lunch_v1",
                "Lunch time, {{displayName}}! 🥗",
                "Capture what you're eating",
                "platewise://food/capture",
            ),
            NotificationTemplate(
                "snacks_v1",
                "Snack check, {{displayName}} 🍎",
                "Snacking? Log it to stay on track",
                "platewise://food/capture",
            ),
            NotificationTemplate(
                "dinner_v1",
                "Dinner time, {{displayName}}! 🍽️",
                "Don't forget to log your meal",
                "platewise://food/capture",
            ),
        )
    }
    by_type = {
        "weight": "weight_reminder_v1",
        "breakfast": "breakfast_v1",
        "lunch": "lunch_v1",
        "snacks": "snacks_v1",
        "dinner": "dinner_v1",
    }

    missing = set(NOTIFICATION_TYPES) - set(by_type)
    if missing:
        raise ValueError(f"No template for notification types: {sorted(missing)}")

    return TemplateTable(MappingProxyType(templates), MappingProxyType(by_type))


def render_template(
    template: NotificationTemplate, context: PersonalizationContext
) -> tuple[str, str]:
    """Render a template's title and body.

    Supported placeholders:
    - {{displayName}} - user's display name or "Friend"
    - {{timeOfDay}} - "morning", "afternoon" or "evening"
    - {{timezone}} - user's timezone
    """

    def fill(text: str) -> str:
        return (
            text.replace("{{displayName}}", context.display_name)
            .replace("{{timeOfDay}}", context.time_of_day)
            .replace("{{timezone}}", context.timezone)
        )

    return fill(template.title), fill(template.body)
