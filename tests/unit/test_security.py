"""Tests for roles, the permission table and the actor context."""

import pytest

from pharmatrace.common.exceptions import AuthorizationError
from pharmatrace.common.security import (
    ROLE_PERMISSIONS,
    STEP_TYPES,
    Actor,
    Role,
    StepAction,
    StepType,
    require_action,
    require_roles,
)


class TestPermissionTable:
    def test_every_role_has_permissions_and_step_type(self):
        assert set(ROLE_PERMISSIONS) == set(Role)
        assert set(STEP_TYPES) == set(Role)

    def test_table_is_immutable(self):
        with pytest.raises(TypeError):
            ROLE_PERMISSIONS[Role.PATIENT] = frozenset(StepAction)

    def test_patient_can_only_receive(self):
        assert ROLE_PERMISSIONS[Role.PATIENT] == frozenset({StepAction.RECEIVED})

    def test_only_admin_can_record_recall(self):
        holders = {role for role, actions in ROLE_PERMISSIONS.items() if StepAction.RECALLED in actions}
        assert holders == {Role.ADMIN}

    @pytest.mark.parametrize("role,step_type", [
        (Role.MANUFACTURER, StepType.PRODUCTION),
        (Role.ADMIN, StepType.PRODUCTION),
        (Role.DISTRIBUTOR, StepType.DISTRIBUTION),
        (Role.HOSPITAL, StepType.HOSPITAL),
        (Role.PATIENT, StepType.PATIENT),
    ])
    def test_step_type_by_role(self, role, step_type):
        assert Actor(id="x", role=role).step_type is step_type


class TestActor:
    def test_role_string_is_parsed(self):
        actor = Actor(id="u1", role="Distributor")
        assert actor.role is Role.DISTRIBUTOR

    def test_unknown_role_is_refused(self):
        with pytest.raises(AuthorizationError):
            Actor(id="u1", role="pharmacist")

    def test_can(self):
        hospital = Actor(id="h", role=Role.HOSPITAL)
        assert hospital.can("dispensed")
        assert not hospital.can(StepAction.SHIPPED)

    def test_is_admin(self):
        assert Actor(id="a", role="admin").is_admin
        assert not Actor(id="m", role="manufacturer").is_admin


class TestGuards:
    def test_require_action_patient_shipped(self):
        with pytest.raises(AuthorizationError):
            require_action(Actor(id="p", role=Role.PATIENT), "shipped")

    def test_require_action_unknown_action(self):
        with pytest.raises(AuthorizationError):
            require_action(Actor(id="a", role=Role.ADMIN), "teleported")

    def test_require_action_returns_parsed(self):
        assert require_action(Actor(id="d", role=Role.DISTRIBUTOR), "SHIPPED") is StepAction.SHIPPED

    def test_require_roles(self):
        require_roles(Actor(id="a", role=Role.ADMIN), Role.ADMIN, Role.MANUFACTURER)
        with pytest.raises(AuthorizationError, match="distributor"):
            require_roles(Actor(id="d", role=Role.DISTRIBUTOR), Role.ADMIN)
