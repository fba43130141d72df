"""Error taxonomy for escalation and notification processing."""

from typing import List, Optional


class EscalationError(Exception):
    """Base exception for escalation core errors."""


class RuleValidationError(EscalationError):
    """A rule or action definition is malformed.

    Raised when a rule is saved. The engine assumes every active rule already
    passed validation.
    """

    def __init__(self, rule_name: Optional[str], problems: List[str]):
        self.rule_name = rule_name
        self.problems = problems
        label = rule_name or "<unnamed>"
        super().__init__(f"Invalid escalation rule {label!r}: " + "; ".join(problems))


class DispatchError(EscalationError):
    """A channel could not deliver a notification."""

    retryable = False
    category = "permanent"


class TransientDispatchError(DispatchError):
    """Timeout, throttling or provider-side 5xx. Eligible for external retry."""

    retryable = True
    category = "transient"


class PermanentDispatchError(DispatchError):
    """Invalid recipient or rejected content. Never retried."""


class TemplateNotFoundError(PermanentDispatchError):
    """No notification template is registered under the requested id."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Notification template not found: {template_id}")


class DuplicateFireError(EscalationError):
    """The fire guard already holds a row for this incident, rule and signature.

    Only raised inside the audit store; callers treat it as "already fired".
    """


class InfrastructureError(EscalationError):
    """The rule source or audit store is unreachable.

    The only error that aborts an evaluation call.
    """
