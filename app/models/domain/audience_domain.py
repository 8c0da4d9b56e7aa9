"""
Audience Domain Models
Tagged variants describing *who* should receive a message or realtime event.

Rule rows store the audience as free-form JSON (or a bare legacy string).
parse_audience() turns that into one of the variants below exactly once,
when the row is read, so resolution and broadcast code never branch on the
raw shape.
"""

from dataclasses import dataclass, field
from typing import Any, Union

# User roles
ROLE_PARENT = "parent"
ROLE_PLAYER = "player"
ROLE_COACH = "coach"
ROLE_BRANCH_ADMIN = "branch_admin"
ROLE_ACCOUNTANT = "accountant"
ROLE_SUPER_ADMIN = "super_admin"
ROLE_OWNER = "owner"

# Roles that receive broadcasts addressed to "all"
BROADCAST_ROLES: tuple[str, ...] = (
    ROLE_BRANCH_ADMIN,
    ROLE_PARENT,
    ROLE_PLAYER,
    ROLE_COACH,
    ROLE_ACCOUNTANT,
)

STAFF_ROLES = frozenset({ROLE_BRANCH_ADMIN, ROLE_ACCOUNTANT, ROLE_COACH})

# Group names used by the parent/player audience selector
_GROUP_ROLES = {"parents": ROLE_PARENT, "players": ROLE_PLAYER}


class AudienceParseError(ValueError):
    """Raised when a stored audience value has an unrecognised shape."""


@dataclass(frozen=True, slots=True)
class AllAudience:
    """Every active recipient across all roles."""

    def to_json(self) -> dict:
        return {"type": "all"}


@dataclass(frozen=True, slots=True)
class RolesAudience:
    """Every active recipient holding one of the listed roles."""

    roles: frozenset[str]

    def to_json(self) -> dict:
        return {"type": "roles", "roles": sorted(self.roles)}


@dataclass(frozen=True, slots=True)
class BranchScope:
    """Roles (and optionally explicit users) selected inside a single branch."""

    roles: frozenset[str] = frozenset()
    users: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class ScopedAudience:
    """Per-branch role selections plus explicitly chosen user/player ids."""

    branches: dict[str, BranchScope] = field(default_factory=dict)
    users: frozenset[str] = frozenset()

    def __hash__(self) -> int:
        return hash((tuple(sorted(self.branches.items(), key=lambda kv: kv[0])), self.users))

    def single_branch_id(self) -> str | None:
        """Branch id when exactly one branch is targeted."""
        if len(self.branches) == 1:
            return next(iter(self.branches))
        return None

    def to_json(self) -> dict:
        return {
            "type": "specific",
            "branches": {
                branch_id: {"roles": sorted(scope.roles), "users": sorted(scope.users)}
                for branch_id, scope in self.branches.items()
            },
            "users": sorted(self.users),
        }


@dataclass(frozen=True, slots=True)
class LegacyAudience:
    """Historical string audience ("all", "staff", "parents", ...)."""

    token: str

    def canonical(self) -> "AllAudience | RolesAudience":
        token = self.token.strip().lower()
        if token == "all":
            return AllAudience()
        if token == "staff":
            return RolesAudience(STAFF_ROLES)
        if token == "parents":
            return RolesAudience(frozenset({ROLE_PARENT}))
        if token == "coaches":
            return RolesAudience(frozenset({ROLE_COACH}))
        return RolesAudience(frozenset({token}))

    def to_json(self) -> str:
        return self.token


AudienceDescriptor = Union[AllAudience, RolesAudience, ScopedAudience, LegacyAudience]


def canonicalize(audience: AudienceDescriptor) -> AudienceDescriptor:
    """Collapse legacy tokens into their structured equivalent."""
    if isinstance(audience, LegacyAudience):
        return audience.canonical()
    return audience


def _str_set(values: Any) -> frozenset[str]:
    if not values:
        return frozenset()
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise AudienceParseError(f"Expected a list, got {type(values).__name__}")
    return frozenset(str(v).strip() for v in values if v is not None and str(v).strip())


def _parse_group_selector(entries: Any) -> ScopedAudience:
    if not isinstance(entries, list):
        raise AudienceParseError("'branches' selector must be a list")

    roles_by_branch: dict[str, set[str]] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        branch_id = entry.get("branchId") or entry.get("branch_id")
        if not branch_id:
            continue
        group = str(entry.get("group") or "").strip().lower()
        role = _GROUP_ROLES.get(group, group)
        bucket = roles_by_branch.setdefault(str(branch_id), set())
        if role:
            bucket.add(role)

    return ScopedAudience(
        branches={b: BranchScope(roles=frozenset(r)) for b, r in roles_by_branch.items()},
    )


def parse_audience(raw: Any) -> AudienceDescriptor:
    """
    Convert a stored audience value into a descriptor.

    Args:
        raw: None, a legacy string token, or a JSON object with a "type" key

    Returns:
        AudienceDescriptor variant

    Raises:
        AudienceParseError: If the value cannot be interpreted
    """
    if raw is None or raw == "" or raw == {}:
        return AllAudience()

    if isinstance(raw, str):
        return LegacyAudience(raw.strip())

    if not isinstance(raw, dict):
        raise AudienceParseError(f"Unsupported audience value: {type(raw).__name__}")

    audience_type = str(raw.get("type") or "all").strip().lower()

    if audience_type == "all":
        return AllAudience()

    if audience_type == "roles":
        roles = _str_set(raw.get("roles"))
        if not roles:
            raise AudienceParseError("Roles audience requires at least one role")
        return RolesAudience(roles)

    if audience_type == "specific":
        branches_raw = raw.get("branches") or {}
        if not isinstance(branches_raw, dict):
            raise AudienceParseError("'specific' audience branches must be an object")
        branches = {
            str(branch_id): BranchScope(
                roles=_str_set((scope or {}).get("roles")),
                users=_str_set((scope or {}).get("users")),
            )
            for branch_id, scope in branches_raw.items()
        }
        return ScopedAudience(branches=branches, users=_str_set(raw.get("users")))

    if audience_type == "users":
        return ScopedAudience(users=_str_set(raw.get("users")))

    if audience_type == "branches":
        return _parse_group_selector(raw.get("branches"))

    raise AudienceParseError(f"Unknown audience type '{audience_type}'")
