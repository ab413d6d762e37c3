"""
Permission Catalog and Permission Model.

The catalog is the append-only set of ``resourceType:action:scope``
permissions.  Re-creating an existing key returns the permission that is
already there; nothing in the catalog is ever edited or removed.

The Permission Model holds each principal's stored profile together with
their ad-hoc ("additional") permissions.  Only the pending-permission
workflow's approval path mutates the ad-hoc sets.  Reads hand out copies
so that a caller holding a record cannot change the model behind its
lock.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

from clinigate.config import EngineConfig, RoleTable
from clinigate.errors import NotFoundError
from clinigate.models import ANY_SCOPE, Permission, Principal, PrincipalRecord
from clinigate.rbac import role_permission_keys


# ---------------------------------------------------------------------------
# Permission catalog
# ---------------------------------------------------------------------------

class PermissionCatalog:
    """Append-only catalog of permissions keyed by composite key."""

    def __init__(self) -> None:
        self._by_key: dict[str, Permission] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_role_table(cls, table: RoleTable) -> "PermissionCatalog":
        """Seed one ``any``-scoped permission per (resource type, action)."""
        catalog = cls()
        for resources in table.values():
            for resource_type, actions in resources.items():
                for action in sorted(actions):
                    catalog.create(resource_type, action)
        return catalog

    def create(
        self,
        resource_type: str,
        action: str,
        scope: str = ANY_SCOPE,
        description: str = "",
    ) -> Permission:
        """Create a permission, or return the existing one with the same key."""
        permission = Permission(
            resource_type=resource_type,
            action=action,
            scope=scope,
            description=description,
        )
        with self._lock:
            existing = self._by_key.get(permission.key)
            if existing is not None:
                return existing
            self._by_key[permission.key] = permission
            return permission

    def get(self, key: str) -> Permission:
        """Return the permission with ``key``.

        Raises:
            NotFoundError: If no permission has that key.
        """
        with self._lock:
            permission = self._by_key.get(key)
        if permission is None:
            raise NotFoundError(f"Permission not found: '{key}'")
        return permission

    def find(
        self,
        resource_type: str,
        action: str,
        scope: Optional[str] = None,
    ) -> Optional[Permission]:
        """Find a permission by resource type and action.

        With no ``scope``, the ``any``-scoped permission wins; otherwise
        the first one created.
        """
        with self._lock:
            if scope is not None:
                return self._by_key.get(f"{resource_type}:{action}:{scope}")
            preferred = self._by_key.get(f"{resource_type}:{action}:{ANY_SCOPE}")
            if preferred is not None:
                return preferred
            for permission in self._by_key.values():
                if permission.resource_type == resource_type and permission.action == action:
                    return permission
        return None

    def resolve_label(self, label: str) -> Optional[Permission]:
        """Map a recommender label to a catalog permission.

        Accepts ``'ResourceType_action'`` and full ``'ResourceType:action:scope'``
        (or ``'ResourceType:action'``) keys.  Returns None when the label is
        malformed or names nothing in the catalog.
        """
        if ":" in label:
            parts = label.split(":")
            if len(parts) == 3:
                with self._lock:
                    return self._by_key.get(label)
            if len(parts) == 2 and all(parts):
                return self.find(parts[0], parts[1])
            return None
        parts = label.split("_")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            return None
        return self.find(parts[0], parts[1])

    def by_resource_type(self, resource_type: str) -> list[Permission]:
        with self._lock:
            return [p for p in self._by_key.values() if p.resource_type == resource_type]

    def all(self) -> list[Permission]:
        with self._lock:
            return list(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, key: str) -> bool:
        return key in self._by_key


# ---------------------------------------------------------------------------
# Permission model
# ---------------------------------------------------------------------------

_PROFILE_FIELDS = {
    "role",
    "branch",
    "department",
    "position",
    "has_license",
    "seniority",
    "employment_type",
    "assigned_patients",
}


class PermissionModel:
    """Stored principals and their ad-hoc permission sets.

    Principals are keyed by ``principal_id``.  ``snapshot()`` produces the
    immutable ``Principal`` used for a single authorization request.
    """

    def __init__(self, config: EngineConfig, catalog: PermissionCatalog) -> None:
        self._config = config
        self._catalog = catalog
        self._records: dict[str, PrincipalRecord] = {}
        self._lock = threading.RLock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def catalog(self) -> PermissionCatalog:
        return self._catalog

    # -- principals --

    def register(self, record: PrincipalRecord) -> PrincipalRecord:
        """Register a new principal.

        Raises:
            ValueError: If ``principal_id`` is already registered.
        """
        with self._lock:
            if record.principal_id in self._records:
                raise ValueError(
                    f"Principal '{record.principal_id}' already registered."
                )
            self._records[record.principal_id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    def get(self, principal_id: str) -> PrincipalRecord:
        """Return a copy of the stored record.

        Raises:
            NotFoundError: If no principal has that id.
        """
        with self._lock:
            return self._require(principal_id).model_copy(deep=True)

    def exists(self, principal_id: str) -> bool:
        return principal_id in self._records

    def snapshot(self, principal_id: str) -> Principal:
        with self._lock:
            return self._require(principal_id).to_principal()

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def update_profile(self, principal_id: str, **changes: Any) -> PrincipalRecord:
        """Apply profile changes, skipping ``None`` values.

        Raises:
            NotFoundError: If no principal has that id.
            ValueError: If a change names a field that is not part of the
                profile (ad-hoc permissions are changed only through
                ``grant_additional`` / ``revoke_additional``).
        """
        unknown = set(changes) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
        updates = {k: v for k, v in changes.items() if v is not None}
        with self._lock:
            record = self._require(principal_id)
            updated = PrincipalRecord.model_validate({**record.model_dump(), **updates})
            self._records[principal_id] = updated
            return updated.model_copy(deep=True)

    # -- ad-hoc permissions --

    def grant_additional(self, principal_id: str, permission: Permission) -> bool:
        """Add ``permission`` to the principal's ad-hoc set.

        Returns:
            True if the set changed.
        """
        with self._lock:
            record = self._require(principal_id)
            if permission.key in record.additional_permissions:
                return False
            record.additional_permissions.add(permission.key)
            return True

    def revoke_additional(self, principal_id: str, permission: Permission) -> bool:
        """Remove ``permission`` from the principal's ad-hoc set.

        Returns:
            True if the set changed.
        """
        with self._lock:
            record = self._require(principal_id)
            if permission.key not in record.additional_permissions:
                return False
            record.additional_permissions.discard(permission.key)
            return True

    def additional_permissions(self, principal_id: str) -> set[str]:
        with self._lock:
            return set(self._require(principal_id).additional_permissions)

    def role_holds(self, principal_id: str, permission: Permission) -> bool:
        """Whether the principal's role table already grants ``permission``."""
        with self._lock:
            role = self._require(principal_id).role
        return permission.key in role_permission_keys(self._config.role_table, role)

    def effective_permission_keys(self, principal_id: str) -> set[str]:
        """Role permissions plus ad-hoc permissions, for listing only.

        The decision engine does not use this set.
        """
        with self._lock:
            record = self._require(principal_id)
            role = record.role
            additional = set(record.additional_permissions)
        return role_permission_keys(self._config.role_table, role) | additional

    def permissions_by_resource(self, principal_id: str) -> dict[str, list[str]]:
        """Effective permissions grouped as resource type -> sorted actions."""
        grouped: dict[str, set[str]] = {}
        for key in self.effective_permission_keys(principal_id):
            resource_type, action, _ = key.split(":", 2)
            grouped.setdefault(resource_type, set()).add(action)
        return {rt: sorted(actions) for rt, actions in sorted(grouped.items())}

    # -- helpers --

    def _require(self, principal_id: str) -> PrincipalRecord:
        record = self._records.get(principal_id)
        if record is None:
            raise NotFoundError(f"Principal not found: '{principal_id}'")
        return record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, principal_id: str) -> bool:
        return principal_id in self._records
