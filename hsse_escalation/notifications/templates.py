"""Notification template resolution."""

import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from hsse_escalation.errors import TemplateNotFoundError
from hsse_escalation.interfaces import RenderedTemplate
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.utils.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

# Top-level template fields are English; other languages live under "translations"
DEFAULT_LANGUAGE = "en"

# Channel-specific body keys; fall back to "body"
_CHANNEL_BODY_KEYS = {
    NotificationChannel.SMS: "sms_body",
    NotificationChannel.PUSH: "push_body",
    NotificationChannel.IN_APP: "push_body",
}


def render(text: str, parameters: Mapping[str, Any]) -> str:
    """Substitute {{name}} placeholders; unknown names are left as-is."""
    def _replace(match: re.Match) -> str:
        value = parameters.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return PLACEHOLDER.sub(_replace, text)


class YamlTemplateResolver:
    """Resolves template ids to subject/content from YAML or built-in defaults."""

    def __init__(self, templates_file: Optional[str] = None):
        self.templates_file = templates_file
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.load_templates()

    def load_templates(self) -> None:
        """Load templates, layering the YAML file over the defaults."""
        self.templates = self._get_default_templates()
        if not self.templates_file:
            return

        try:
            templates_path = Path(self.templates_file)
            if templates_path.exists():
                with open(templates_path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
                self.templates.update(loaded.get("templates", {}))
                logger.info("Loaded notification templates", file=self.templates_file)
            else:
                logger.warning("Templates file not found, using defaults", file=self.templates_file)

        except (OSError, yaml.YAMLError) as e:
            logger.error("Error loading templates file", file=self.templates_file, error=str(e))

    def resolve(
        self,
        template_id: str,
        parameters: Mapping[str, Any],
        channel: Optional[NotificationChannel] = None,
        language: Optional[str] = None,
    ) -> RenderedTemplate:
        """Render a template, in ``language`` when a translation exists, else English."""
        template = self.templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)

        language = (language or DEFAULT_LANGUAGE).strip().lower()
        if language != DEFAULT_LANGUAGE:
            translated = template.get("translations", {}).get(language)
            if translated:
                template = translated
            else:
                logger.warning(
                    "Template not found for language, falling back to English",
                    template_id=template_id,
                    language=language
                )

        body_key = _CHANNEL_BODY_KEYS.get(channel) if channel else None
        body = template.get(body_key) if body_key else None
        if not body:
            body = template.get("body", "")

        return RenderedTemplate(
            subject=render(template.get("subject", ""), parameters),
            content=render(body, parameters),
        )

    def _get_default_templates(self) -> Dict[str, Dict[str, Any]]:
        """Get default template configuration."""
        return {
            "incident_created": {
                "subject": "New Incident Reported: {{incident_title}}",
                "body": (
                    "A new incident has been reported:\n\n"
                    "Incident ID: {{incident_id}}\n"
                    "Title: {{incident_title}}\n"
                    "Severity: {{incident_severity}}\n"
                    "Location: {{incident_location}}\n"
                    "Reported by: {{reporter_name}}\n"
                    "Created: {{incident_created_at}}\n\n"
                    "View details: {{url}}"
                ),
                "sms_body": (
                    "New incident #{{incident_id}}: {{incident_title}}. "
                    "Severity: {{incident_severity}}. Location: {{incident_location}}. View: {{url}}"
                ),
                "push_body": "Severity: {{incident_severity}} at {{incident_location}}",
                "translations": {
                    "id": {
                        "subject": "Insiden Baru Dilaporkan: {{incident_title}}",
                        "body": (
                            "Insiden baru telah dilaporkan:\n\n"
                            "ID Insiden: {{incident_id}}\n"
                            "Judul: {{incident_title}}\n"
                            "Tingkat Keparahan: {{incident_severity}}\n"
                            "Lokasi: {{incident_location}}\n"
                            "Dilaporkan oleh: {{reporter_name}}\n"
                            "Dibuat: {{incident_created_at}}\n\n"
                            "Lihat detail: {{url}}"
                        ),
                        "sms_body": (
                            "Insiden baru #{{incident_id}}: {{incident_title}}. "
                            "Tingkat: {{incident_severity}}. Lokasi: {{incident_location}}. Lihat: {{url}}"
                        ),
                        "push_body": "Tingkat: {{incident_severity}} di {{incident_location}}",
                    },
                },
            },
            "incident_critical": {
                "subject": "CRITICAL INCIDENT ALERT: {{incident_title}}",
                "body": (
                    "CRITICAL INCIDENT REQUIRES IMMEDIATE ATTENTION\n\n"
                    "Incident ID: {{incident_id}}\n"
                    "Title: {{incident_title}}\n"
                    "Severity: {{incident_severity}}\n"
                    "Location: {{incident_location}}\n"
                    "Reported by: {{reporter_name}}\n"
                    "Created: {{incident_created_at}}\n\n"
                    "THIS INCIDENT REQUIRES IMMEDIATE RESPONSE\n\n"
                    "View details: {{url}}"
                ),
                "sms_body": (
                    "CRITICAL INCIDENT #{{incident_id}}: {{incident_title}} at "
                    "{{incident_location}}. IMMEDIATE RESPONSE REQUIRED. View: {{url}}"
                ),
                "push_body": "{{incident_title}} - IMMEDIATE RESPONSE REQUIRED",
            },
            "escalation_overdue": {
                "subject": "Incident Escalated: {{incident_title}}",
                "body": (
                    "An incident has been escalated and requires your attention:\n\n"
                    "Incident ID: {{incident_id}}\n"
                    "Title: {{incident_title}}\n"
                    "Severity: {{incident_severity}}\n"
                    "Status: {{incident_status}}\n"
                    "Location: {{incident_location}}\n"
                    "Created: {{incident_created_at}}\n\n"
                    "Escalation Reason: {{escalation_reason}}\n"
                    "Escalated by: {{escalated_by}}\n\n"
                    "Please review and take appropriate action.\n\n"
                    "View details: {{url}}"
                ),
                "sms_body": "Incident #{{incident_id}} escalated: {{escalation_reason}}. {{url}}",
                "push_body": "{{incident_title}} requires your attention",
            },
            "emergency_alert": {
                "subject": "EMERGENCY ALERT: {{incident_title}}",
                "body": (
                    "EMERGENCY SITUATION\n\n"
                    "ID: {{incident_id}}\n"
                    "Title: {{incident_title}}\n"
                    "Severity: {{incident_severity}}\n"
                    "Location: {{incident_location}}\n"
                    "Time: {{incident_created_at}}\n\n"
                    "ACTIVATE EMERGENCY RESPONSE PROCEDURES\n\n"
                    "View details: {{url}}"
                ),
                "sms_body": (
                    "EMERGENCY: {{incident_title}} at {{incident_location}}. "
                    "Incident #{{incident_id}}. ACTIVATE EMERGENCY PROCEDURES. {{url}}"
                ),
                "push_body": "{{incident_title}} - ACTIVATE EMERGENCY PROCEDURES",
            },
            "incident_regulatory": {
                "subject": "Regulatory Reporting Required: {{incident_title}}",
                "body": (
                    "A reportable incident has occurred that requires regulatory notification:\n\n"
                    "Incident ID: {{incident_id}}\n"
                    "Title: {{incident_title}}\n"
                    "Severity: {{incident_severity}}\n"
                    "Location: {{incident_location}}\n"
                    "Created: {{incident_created_at}}\n\n"
                    "Please prepare and submit the required regulatory reports.\n\n"
                    "View details: {{url}}"
                ),
            },
            "investigator_assigned": {
                "subject": "You have been assigned as investigator: {{incident_title}}",
                "body": (
                    "You have been assigned as the investigator for the following incident:\n\n"
                    "Incident ID: {{incident_id}}\n"
                    "Title: {{incident_title}}\n"
                    "Severity: {{incident_severity}}\n"
                    "Location: {{incident_location}}\n\n"
                    "View details: {{url}}"
                ),
                "push_body": "You are assigned to investigate: {{incident_title}}",
            },
        }
