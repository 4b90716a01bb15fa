# Overview: Role capability checks and department membership lookups.

"""
Role-based authorization for workflow and inventory operations.

WHY: The auth system tells us who the actor is (actor_id, actor_role,
actor_department) on every call. We never authenticate and never cache
profiles; we only decide whether that role may act on a department or
perform an elevated action.

DESIGN PRINCIPLES:
- Fail closed: unknown roles have no departments and no actions
- The role -> capability table is injected at app startup (ROLE_CAPABILITIES),
  not hard-coded in the services
- Department membership comes from a DepartmentDirectory; a missing profile
  is a denial, never a default
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

from ..errors import NotFound, Unauthorized, UserNotInDepartment


DEPARTMENT_SALES = "sales"
DEPARTMENT_DESIGN = "design"
DEPARTMENT_PREPRESS = "prepress"
DEPARTMENT_PRODUCTION = "production"
DEPARTMENT_OUTSOURCE = "outsource"

VALID_DEPARTMENTS = {
    DEPARTMENT_SALES,
    DEPARTMENT_DESIGN,
    DEPARTMENT_PREPRESS,
    DEPARTMENT_PRODUCTION,
    DEPARTMENT_OUTSOURCE,
}

# Elevated actions a role may be granted on top of department access
ACTION_FORCE_PRODUCTION = "force_production"
ACTION_REDEFINE_SEQUENCE = "redefine_sequence"
ACTION_MANAGE_INVENTORY = "manage_inventory"
ACTION_ALLOCATE_MATERIAL = "allocate_material"

VALID_ACTIONS = {
    ACTION_FORCE_PRODUCTION,
    ACTION_REDEFINE_SEQUENCE,
    ACTION_MANAGE_INVENTORY,
    ACTION_ALLOCATE_MATERIAL,
}


@dataclass(frozen=True)
class ActorContext:
    """Who is calling. Supplied per call by the auth collaborator."""
    actor_id: str
    actor_role: str
    actor_department: Optional[str] = None
    actor_name: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    user_id: str
    department: str
    name: Optional[str] = None


@dataclass(frozen=True)
class RoleCapability:
    departments: frozenset = field(default_factory=frozenset)
    actions: frozenset = field(default_factory=frozenset)


class RoleCapabilities:
    """
    Immutable role -> capability lookup.

    Built once from config:
        {"prepress": {"departments": ["prepress"], "actions": ["force_production"]}}
    """

    def __init__(self, table: Mapping[str, RoleCapability]):
        self._table = dict(table)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Mapping]) -> "RoleCapabilities":
        table = {}
        for role, entry in raw.items():
            departments = frozenset(entry.get("departments", ()))
            actions = frozenset(entry.get("actions", ()))
            unknown = (departments - VALID_DEPARTMENTS) | (actions - VALID_ACTIONS)
            if unknown:
                raise ValueError(f"Role {role!r} references unknown capabilities: {sorted(unknown)}")
            table[role] = RoleCapability(departments=departments, actions=actions)
        return cls(table)

    def for_role(self, role: str) -> RoleCapability:
        return self._table.get(role, RoleCapability())

    def can_act_on(self, role: str, department: str) -> bool:
        return department in self.for_role(role).departments

    def can_perform(self, role: str, action: str) -> bool:
        return action in self.for_role(role).actions

    def require_department(self, actor: ActorContext, department: str, *, entity: str, entity_id, operation: str) -> None:
        if not self.can_act_on(actor.actor_role, department):
            raise Unauthorized(
                f"Role '{actor.actor_role}' cannot act on the {department} department",
                entity=entity,
                entity_id=entity_id,
                operation=operation,
                current=department,
                requested=actor.actor_role,
            )

    def require_action(self, actor: ActorContext, action: str, *, entity: str, entity_id=None, operation: str) -> None:
        if not self.can_perform(actor.actor_role, action):
            raise Unauthorized(
                f"Role '{actor.actor_role}' is not allowed to {action.replace('_', ' ')}",
                entity=entity,
                entity_id=entity_id,
                operation=operation,
                requested=action,
            )


class DepartmentDirectory(Protocol):
    """Profile lookup owned by the auth/profile system."""

    def lookup(self, user_id: str) -> Profile:
        """Return the user's profile or raise NotFound."""
        ...


class StaticDepartmentDirectory:
    """
    Directory backed by the DEPARTMENT_MEMBERS config mapping.

    Values are either a department string or {"department": ..., "name": ...}.
    """

    def __init__(self, members: Mapping[str, object]):
        self._profiles = {}
        for user_id, value in members.items():
            if isinstance(value, str):
                self._profiles[str(user_id)] = Profile(user_id=str(user_id), department=value)
            else:
                self._profiles[str(user_id)] = Profile(
                    user_id=str(user_id),
                    department=value["department"],
                    name=value.get("name"),
                )

    def lookup(self, user_id: str) -> Profile:
        profile = self._profiles.get(str(user_id))
        if profile is None:
            raise NotFound(f"No profile for user {user_id}", entity="profile", entity_id=user_id, operation="lookup")
        return profile


def require_member(directory: DepartmentDirectory, user_id: str, department: str, *, item_id, operation: str) -> Profile:
    """
    Resolve user_id and require membership of department.

    A missing profile fails closed as UserNotInDepartment.
    """
    try:
        profile = directory.lookup(user_id)
    except NotFound:
        raise UserNotInDepartment(
            f"User {user_id} has no profile; cannot assign to {department}",
            entity="order_item",
            entity_id=item_id,
            operation=operation,
            current=None,
            requested=department,
        )
    if profile.department != department:
        raise UserNotInDepartment(
            f"User {user_id} belongs to {profile.department}, not {department}",
            entity="order_item",
            entity_id=item_id,
            operation=operation,
            current=profile.department,
            requested=department,
        )
    return profile
