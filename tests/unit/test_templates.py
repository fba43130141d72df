"""Unit tests for notification templates."""

import pytest

from hsse_escalation.errors import TemplateNotFoundError
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.notifications.templates import YamlTemplateResolver, render


class TestRender:
    """Test placeholder substitution."""

    def test_known_placeholders_are_substituted(self):
        assert render("Incident {{incident_id}} at {{ location }}", {"incident_id": 42, "location": "Dock 3"}) == (
            "Incident 42 at Dock 3"
        )

    def test_unknown_placeholders_are_left_intact(self):
        assert render("Hello {{name}}", {}) == "Hello {{name}}"


class TestYamlTemplateResolver:
    """Test template resolution."""

    def test_default_template(self):
        rendered = YamlTemplateResolver().resolve(
            "incident_critical",
            {"incident_title": "Gas leak", "incident_id": 9},
        )

        assert rendered.subject == "CRITICAL INCIDENT ALERT: Gas leak"
        assert "Incident ID: 9" in rendered.content

    def test_channel_specific_body(self):
        resolver = YamlTemplateResolver()
        params = {"incident_title": "Gas leak", "incident_id": 9, "incident_location": "Plant 2", "url": "u"}

        sms = resolver.resolve("emergency_alert", params, NotificationChannel.SMS)
        email = resolver.resolve("emergency_alert", params, NotificationChannel.EMAIL)

        assert sms.content.startswith("EMERGENCY: Gas leak at Plant 2")
        assert email.content.startswith("EMERGENCY SITUATION")

    def test_missing_channel_body_falls_back_to_body(self):
        rendered = YamlTemplateResolver().resolve(
            "incident_regulatory", {"incident_title": "Spill"}, NotificationChannel.SMS
        )
        assert rendered.content.startswith("A reportable incident has occurred")

    def test_translated_template(self):
        params = {"incident_title": "Gas leak", "incident_severity": "critical", "incident_location": "Plant 2"}
        resolver = YamlTemplateResolver()

        email = resolver.resolve("incident_created", params, NotificationChannel.EMAIL, language="id")
        push = resolver.resolve("incident_created", params, NotificationChannel.PUSH, language="ID")

        assert email.subject == "Insiden Baru Dilaporkan: Gas leak"
        assert email.content.startswith("Insiden baru telah dilaporkan")
        assert push.content == "Tingkat: critical di Plant 2"

    def test_missing_translation_falls_back_to_english(self):
        resolver = YamlTemplateResolver()

        rendered = resolver.resolve("incident_critical", {"incident_title": "Gas leak"}, language="id")
        default = resolver.resolve("incident_created", {"incident_title": "Gas leak"}, language=None)

        assert rendered.subject == "CRITICAL INCIDENT ALERT: Gas leak"
        assert default.subject == "New Incident Reported: Gas leak"

    def test_yaml_translations(self, tmp_path):
        path = tmp_path / "templates.yaml"
        path.write_text(
            "templates:\n"
            "  toolbox_talk:\n"
            "    subject: 'Toolbox talk'\n"
            "    body: 'Reminder for {{site}}'\n"
            "    translations:\n"
            "      id:\n"
            "        subject: 'Pembicaraan keselamatan'\n"
            "        body: 'Pengingat untuk {{site}}'\n",
            encoding="utf-8",
        )

        rendered = YamlTemplateResolver(str(path)).resolve("toolbox_talk", {"site": "Utara"}, language="id")

        assert rendered.subject == "Pembicaraan keselamatan"
        assert rendered.content == "Pengingat untuk Utara"

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            YamlTemplateResolver().resolve("does_not_exist", {})

        assert exc_info.value.retryable is False

    def test_yaml_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "templates.yaml"
        path.write_text(
            "templates:\n"
            "  incident_created:\n"
            "    subject: 'Custom: {{incident_title}}'\n"
            "    body: 'Custom body'\n"
            "  toolbox_talk:\n"
            "    subject: 'Toolbox talk'\n"
            "    body: 'Reminder for {{site}}'\n",
            encoding="utf-8",
        )

        resolver = YamlTemplateResolver(str(path))

        assert resolver.resolve("incident_created", {"incident_title": "Fall"}).subject == "Custom: Fall"
        assert resolver.resolve("toolbox_talk", {"site": "North"}).content == "Reminder for North"
        assert resolver.resolve("emergency_alert", {}).subject.startswith("EMERGENCY ALERT")
