"""Role variants and user helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from vendorportal.storage.common import parse_roles, serialize_roles
from vendorportal.storage.models import (
    RoleKind,
    StaffRole,
    User,
    VendorRole,
    make_role,
    role_from_dict,
)


class TestRoleVariants:
    def test_vendor_role_requires_vendor_id(self):
        with pytest.raises(ValueError):
            VendorRole(RoleKind.VENDOR_ADMIN, "")

    def test_staff_role_rejects_vendor_kind(self):
        with pytest.raises(ValueError):
            StaffRole(RoleKind.VENDOR_RECRUITER)

    def test_vendor_role_rejects_staff_kind(self):
        with pytest.raises(ValueError):
            VendorRole(RoleKind.FINANCE_TEAM, "vendor-1")

    def test_make_role_picks_variant(self):
        assert isinstance(make_role("vendor_admin", "v-1"), VendorRole)
        assert isinstance(make_role("delivery_head"), StaffRole)

    def test_make_role_rejects_vendor_id_on_staff_role(self):
        with pytest.raises(ValueError):
            make_role(RoleKind.ELIKA_ADMIN, "v-1")

    def test_unknown_role_kind_rejected(self):
        with pytest.raises(ValueError):
            make_role("super_admin")

    def test_roles_survive_serialization(self):
        roles = (VendorRole(RoleKind.VENDOR_RECRUITER, "v-9"), StaffRole(RoleKind.FINANCE_TEAM))
        encoded = serialize_roles(roles)
        assert encoded == [
            {"role": "vendor_recruiter", "vendor_id": "v-9"},
            {"role": "finance_team", "vendor_id": None},
        ]
        assert parse_roles(encoded) == roles
        assert role_from_dict(encoded[0]) == roles[0]

    def test_parse_roles_accepts_json_text(self):
        assert parse_roles('[{"role": "elika_admin", "vendor_id": null}]') == (
            StaffRole(RoleKind.ELIKA_ADMIN),
        )
        assert parse_roles(None) == ()


class TestUser:
    def _user(self, *roles):
        return User(id="u-1", email="  Person@Example.COM ", password_hash="x", roles=roles)

    def test_email_normalized(self):
        assert self._user().email == "person@example.com"

    @pytest.mark.parametrize(
        "role,required",
        [
            (StaffRole(RoleKind.ELIKA_ADMIN), True),
            (StaffRole(RoleKind.FINANCE_TEAM), True),
            (StaffRole(RoleKind.DELIVERY_HEAD), False),
            (VendorRole(RoleKind.VENDOR_ADMIN, "v-1"), False),
        ],
    )
    def test_two_factor_required_for_privileged_roles(self, role, required):
        assert self._user(role).requires_two_factor is required

    def test_vendor_ids(self):
        user = self._user(
            VendorRole(RoleKind.VENDOR_ADMIN, "v-1"), StaffRole(RoleKind.DELIVERY_HEAD)
        )
        assert user.vendor_ids == ("v-1",)

    def test_lock_expires(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        user = self._user()
        user.lock_until = now + timedelta(minutes=5)
        assert user.is_locked(now)
        assert not user.is_locked(now + timedelta(minutes=5))
