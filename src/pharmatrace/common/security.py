"""Actor context, roles and the role → custody-action permission table."""

import enum
from dataclasses import dataclass
from types import MappingProxyType

from pharmatrace.common.exceptions import AuthorizationError


class Role(str, enum.Enum):
    MANUFACTURER = "manufacturer"
    DISTRIBUTOR = "distributor"
    HOSPITAL = "hospital"
    PATIENT = "patient"
    ADMIN = "admin"


class StepAction(str, enum.Enum):
    CREATED = "created"
    SHIPPED = "shipped"
    RECEIVED = "received"
    STORED = "stored"
    DISPENSED = "dispensed"
    QUALITY_CHECK = "quality_check"
    RECALLED = "recalled"


class StepType(str, enum.Enum):
    PRODUCTION = "production"
    DISTRIBUTION = "distribution"
    HOSPITAL = "hospital"
    PATIENT = "patient"


_COMMON_ACTIONS = frozenset({
    StepAction.CREATED,
    StepAction.SHIPPED,
    StepAction.RECEIVED,
    StepAction.STORED,
    StepAction.DISPENSED,
    StepAction.QUALITY_CHECK,
})

ROLE_PERMISSIONS: MappingProxyType = MappingProxyType({
    Role.MANUFACTURER: frozenset({StepAction.CREATED, StepAction.QUALITY_CHECK}),
    Role.DISTRIBUTOR: frozenset({
        StepAction.SHIPPED, StepAction.RECEIVED, StepAction.STORED, StepAction.QUALITY_CHECK,
    }),
    Role.HOSPITAL: frozenset({
        StepAction.RECEIVED, StepAction.STORED, StepAction.DISPENSED, StepAction.QUALITY_CHECK,
    }),
    Role.PATIENT: frozenset({StepAction.RECEIVED}),
    Role.ADMIN: _COMMON_ACTIONS | {StepAction.RECALLED},
})

STEP_TYPES: MappingProxyType = MappingProxyType({
    Role.MANUFACTURER: StepType.PRODUCTION,
    Role.ADMIN: StepType.PRODUCTION,
    Role.DISTRIBUTOR: StepType.DISTRIBUTION,
    Role.HOSPITAL: StepType.HOSPITAL,
    Role.PATIENT: StepType.PATIENT,
})


def parse_role(value: "Role | str") -> Role:
    """Map a role string onto the closed Role enum; unknown roles are refused."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise AuthorizationError(f"Unknown role '{value}'") from None


def parse_action(value: "StepAction | str") -> StepAction:
    if isinstance(value, StepAction):
        return value
    try:
        return StepAction(str(value).strip().lower())
    except ValueError:
        raise AuthorizationError(f"Unknown custody action '{value}'") from None


@dataclass(frozen=True)
class Actor:
    """Authenticated caller attached to every operation."""
    id: str
    role: Role
    organization_id: str | None = None
    name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "role", parse_role(self.role))

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def can(self, action: "StepAction | str") -> bool:
        return parse_action(action) in ROLE_PERMISSIONS[self.role]

    @property
    def step_type(self) -> StepType:
        return STEP_TYPES[self.role]


def require_roles(actor: Actor, *roles: Role, message: str = "") -> None:
    """Raise AuthorizationError unless the actor holds one of ``roles``."""
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise AuthorizationError(message or f"Role '{actor.role.value}' may not do this (allowed: {allowed})")


def require_action(actor: Actor, action: "StepAction | str") -> StepAction:
    """Return the parsed action if the actor's role permits it."""
    parsed = parse_action(action)
    if parsed not in ROLE_PERMISSIONS[actor.role]:
        raise AuthorizationError(
            f"Role '{actor.role.value}' is not permitted to record '{parsed.value}'"
        )
    return parsed
