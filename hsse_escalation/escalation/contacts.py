"""Contact directory resolving escalation targets to recipients."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from hsse_escalation.interfaces import Recipient
from hsse_escalation.utils.logging import get_logger
from hsse_escalation.utils.validation import validate_email, validate_phone

logger = get_logger(__name__)


class ContactDirectory:
    """Resolves roles, departments and user ids to notification recipients.

    A target is looked up as a role first, then as a department, then as a
    single named user. Unknown targets resolve to no recipients.
    """

    def __init__(self, contacts_file: Optional[str] = None, contacts: Optional[Dict[str, Any]] = None):
        self.contacts_file = contacts_file
        self.contacts: Dict[str, Any] = {}
        if contacts is not None:
            self.contacts = contacts
        else:
            self.load_contacts()

    def load_contacts(self) -> None:
        """Load escalation contacts from JSON file."""
        if not self.contacts_file:
            self.contacts = self._get_default_contacts()
            return

        try:
            contacts_path = Path(self.contacts_file)
            if contacts_path.exists():
                with open(contacts_path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if self._validate_contacts(loaded):
                    self.contacts = loaded
                    logger.info("Loaded escalation contacts", file=self.contacts_file)
                    return
                logger.warning("Contacts file invalid, using defaults", file=self.contacts_file)
            else:
                logger.warning("Contacts file not found, using defaults", file=self.contacts_file)

        except (OSError, json.JSONDecodeError) as e:
            logger.error("Error loading contacts file", file=self.contacts_file, error=str(e))

        self.contacts = self._get_default_contacts()

    async def resolve(self, target: str) -> List[Recipient]:
        """Get recipients for an escalation target."""
        user_ids = self._user_ids_for(target)

        recipients = []
        for user_id in user_ids:
            recipient = self._to_recipient(user_id)
            if recipient and recipient not in recipients:
                recipients.append(recipient)

        logger.debug("Resolved escalation target", target=target, recipient_count=len(recipients))
        return recipients

    def _user_ids_for(self, target: str) -> List[str]:
        roles = self.contacts.get("roles", {})
        if target in roles:
            return list(roles[target])

        departments = self.contacts.get("departments", {})
        if target in departments:
            return list(departments[target])

        if target in self.contacts.get("users", {}):
            return [target]

        logger.warning("Escalation target not found", target=target)
        return []

    def _to_recipient(self, user_id: str) -> Optional[Recipient]:
        user = self.contacts.get("users", {}).get(user_id)
        if user is None:
            logger.warning("Contact reference not found", reference=user_id)
            return None

        email = user.get("email")
        if email and not validate_email(email):
            logger.warning("Ignoring invalid contact email", user_id=user_id)
            email = None
        phone = user.get("phone")
        if phone and not validate_phone(phone):
            logger.warning("Ignoring invalid contact phone", user_id=user_id)
            phone = None

        return Recipient(
            id=user_id,
            name=user.get("name"),
            recipient_type=user.get("type", "user"),
            email=email,
            phone=phone,
            device_token=user.get("device_token"),
        )

    def _validate_contacts(self, contacts: Dict[str, Any]) -> bool:
        """Validate contact configuration structure."""
        if not isinstance(contacts.get("users"), dict):
            logger.error("Contacts validation failed: missing 'users'")
            return False

        for name, contact in contacts["users"].items():
            if not isinstance(contact, dict) or "name" not in contact:
                logger.error("Invalid contact definition", contact=name)
                return False

        for section in ("roles", "departments"):
            for key, members in contacts.get(section, {}).items():
                if not isinstance(members, list):
                    logger.error("Contact group must be a list", section=section, group=key)
                    return False

        return True

    def get_contacts_summary(self) -> Dict[str, Any]:
        """Get summary of contact configuration."""
        users = self.contacts.get("users", {})
        return {
            "total_users": len(users),
            "roles": sorted(self.contacts.get("roles", {})),
            "departments": sorted(self.contacts.get("departments", {})),
            "users_with_email": len([u for u in users.values() if u.get("email")]),
            "users_with_phone": len([u for u in users.values() if u.get("phone")]),
        }

    def _get_default_contacts(self) -> Dict[str, Any]:
        """Get default contact configuration."""
        def user(name: str, email: str, phone: Optional[str] = None) -> Dict[str, Any]:
            entry: Dict[str, Any] = {"name": name, "email": email}
            if phone:
                entry["phone"] = phone
            return entry

        return {
            "version": 1,
            "users": {
                "hse_manager_1": user("HSE Manager (Site A)", "hse.manager1@harmoni360.com", "+6281100000001"),
                "hse_manager_2": user("HSE Manager (Site B)", "hse.manager2@harmoni360.com", "+6281100000002"),
                "safety_officer_1": user("Safety Officer 1", "safety1@harmoni360.com", "+6281100000011"),
                "safety_officer_2": user("Safety Officer 2", "safety2@harmoni360.com", "+6281100000012"),
                "dept_manager_1": user("Department Manager 1", "dept.manager1@harmoni360.com"),
                "dept_manager_2": user("Department Manager 2", "dept.manager2@harmoni360.com"),
                "site_manager": user("Site Manager", "site.manager@harmoni360.com", "+6281100000021"),
                "operations_manager": user("Operations Manager", "ops.manager@harmoni360.com", "+6281100000022"),
                "emergency_coordinator": user("Emergency Coordinator", "emergency@harmoni360.com", "+6281100000031"),
                "medical_officer": user("Medical Officer", "medical@harmoni360.com", "+6281100000032"),
                "regulatory_officer": user("Regulatory Officer", "regulatory@harmoni360.com"),
                "compliance_manager": user("Compliance Manager", "compliance@harmoni360.com"),
            },
            "roles": {
                "HSE_Manager": ["hse_manager_1", "hse_manager_2"],
                "Safety_Officer": ["safety_officer_1", "safety_officer_2"],
                "Department_Manager": ["dept_manager_1", "dept_manager_2"],
                "management": ["site_manager", "hse_manager_1", "operations_manager"],
                "emergency_team": ["emergency_coordinator", "safety_officer_1", "medical_officer"],
                "regulatory_team": ["regulatory_officer", "compliance_manager"],
            },
            "departments": {
                "department_manager": ["dept_manager_1"],
                "Operations": ["operations_manager", "dept_manager_1"],
                "Maintenance": ["dept_manager_2"],
            },
        }
