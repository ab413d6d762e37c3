"""
Role-Based Access Control (RBAC) lookups for Clinigate.

Answers "does this role's static table list this action on this resource
type?" and nothing else.  Attribute-based conditions, explicit deny rules
and ad-hoc per-principal permissions are not considered here; the
decision engine layers those on top.

**Roles in the default table:**

* Doctor, Nurse           -- clinical staff.
* Receptionist, Cashier   -- front desk and billing.
* HR, Manager             -- staff administration and reporting.
* ITAdmin, SecurityAdmin  -- system and security administration.
"""

from __future__ import annotations

from clinigate.config import RoleTable


def check_permission(table: RoleTable, role: str, resource_type: str, action: str) -> bool:
    """Check whether a role's static table allows an action.

    Args:
        table: The role table to consult.
        role: The actor's role name.
        resource_type: The resource type (e.g., 'VitalSigns').
        action: The action (e.g., 'create').

    Returns:
        True only if the role is known, lists the resource type, and
        lists the action for it.
    """
    resources = table.get(role)
    if resources is None:
        return False
    actions = resources.get(resource_type)
    return actions is not None and action in actions


def require_permission(table: RoleTable, role: str, resource_type: str, action: str) -> None:
    """Enforce a role-table check; raise if denied.

    Raises:
        PermissionError: If the role table does not allow the action.
    """
    if not check_permission(table, role, resource_type, action):
        raise PermissionError(
            f"Role '{role}' is not permitted to perform '{action}' on '{resource_type}'."
        )


def get_permissions_for_role(table: RoleTable, role: str) -> dict[str, list[str]]:
    """Return a copy of one role's table with actions sorted.

    Returns:
        Mapping of resource type to sorted action names; empty for an
        unknown role.
    """
    return {
        resource_type: sorted(actions)
        for resource_type, actions in sorted(table.get(role, {}).items())
    }


def role_permission_keys(table: RoleTable, role: str, scope: str = "any") -> set[str]:
    """Return the ``resourceType:action:scope`` keys a role holds."""
    return {
        f"{resource_type}:{action}:{scope}"
        for resource_type, actions in table.get(role, {}).items()
        for action in actions
    }


def list_roles(table: RoleTable) -> list[str]:
    return sorted(table)
