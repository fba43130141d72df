"""Service wiring for the HSSE escalation service."""

from .container import EscalationServices, build_services, seed_rules

__all__ = [
    "EscalationServices",
    "build_services",
    "seed_rules",
]
