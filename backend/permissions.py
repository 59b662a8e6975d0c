from typing import Dict, Any
import logging

from core.errors import ForbiddenError

logger = logging.getLogger(__name__)


class PermissionChecker:
    """
    Role and ownership enforcement.

    RULES:
    1. The caller identity {user_id, role} comes from the bearer token and is trusted
    2. Admins may act on every project
    3. Beneficiaries may act only on projects they own
    4. Donors have read access only
    """

    def check_admin_role(self, user: Dict[str, Any]):
        """Check if user has admin role"""
        if user.get("role") != "admin":
            logger.warning(f"[PERMISSION] Admin role required, user:{user.get('user_id')} is {user.get('role')}")
            raise ForbiddenError("Admin role required for this operation")
        return True

    def check_role(self, user: Dict[str, Any], *roles: str):
        """Check that user has one of the given roles"""
        if user.get("role") not in roles:
            logger.warning(f"[PERMISSION] Role {user.get('role')} not in {roles} for user:{user.get('user_id')}")
            raise ForbiddenError()
        return True

    def is_project_owner(self, user: Dict[str, Any], project: Dict[str, Any]) -> bool:
        return str(project.get("beneficiary_id")) == str(user.get("user_id"))

    def check_project_write_access(self, user: Dict[str, Any], project: Dict[str, Any]):
        """
        Admins always pass; beneficiaries must own the project; everyone else is refused.
        """
        if user.get("role") == "admin":
            return True

        if user.get("role") == "beneficiary" and self.is_project_owner(user, project):
            return True

        logger.warning(
            f"[PERMISSION] user:{user.get('user_id')} ({user.get('role')}) "
            f"has no write access to project:{project.get('_id')}"
        )
        raise ForbiddenError()


permission_checker = PermissionChecker()
