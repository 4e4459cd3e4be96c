"""
Tests: Identity & Organization Directory.

Covers registration (handle + verification email), verification,
profile updates and the public projection.
"""

import re

import pytest

from marketplace.core.failures import FailureKind
from marketplace.models import db
from marketplace.models.notification import EmailLog
from marketplace.models.organization import Organization
from marketplace.services import directory_service
from marketplace.services.directory_service import OrganizationDirectory

CONTACT = {
    "company_name": "Fjord Bygg AS",
    "email": "post@fjordbygg.no",
    "phone": "+47 55 00 00 00",
    "address": "Kaigaten 1, Bergen",
}


def _register(user_id="idp-user-1", name="Fjord Bygg", contact=None):
    return OrganizationDirectory.register(user_id=user_id, name=name, contact=contact or dict(CONTACT))


class TestRegister:
    def test_register_assigns_handle_and_code(self):
        org, failure = _register()

        assert failure is None
        assert re.fullmatch(r"member_[a-z0-9]{5}", org.handle)
        assert re.fullmatch(r"[A-Z0-9]{6}", org.verification_code)
        assert org.is_verified is False
        assert org.contact_record() == CONTACT

    def test_register_sends_verification_email(self):
        org, _ = _register()

        log = EmailLog.query.filter_by(category="verification").one()
        assert log.recipient_email == CONTACT["email"]
        assert log.organization_id == org.id
        assert log.template_name == "organization_verification"

    def test_one_organization_per_user(self):
        _register()
        org, failure = _register(name="Second try")

        assert org is None
        assert failure.kind == FailureKind.CONFLICT
        assert Organization.query.count() == 1

    @pytest.mark.parametrize("contact,field", [
        ({**CONTACT, "email": "not-an-email"}, "email"),
        ({**CONTACT, "company_name": ""}, "company_name"),
        ({**CONTACT, "fax": "123"}, "fax"),
    ])
    def test_invalid_contact_rejected(self, contact, field):
        _, failure = _register(contact=contact)
        assert failure.kind == FailureKind.VALIDATION
        assert field in failure.details

    def test_name_required(self):
        _, failure = _register(name="  ")
        assert failure.kind == FailureKind.VALIDATION
        assert "name" in failure.details

    def test_handle_collision_is_retried(self, make_org, monkeypatch):
        taken = make_org().handle
        handles = iter([taken, "member_fresh"])
        monkeypatch.setattr(directory_service, "_new_handle", lambda: next(handles))

        org, failure = _register()
        assert failure is None
        assert org.handle == "member_fresh"

    def test_resolve_user(self):
        org, _ = _register(user_id="idp-42")
        assert OrganizationDirectory.resolve_user("idp-42").id == org.id
        assert OrganizationDirectory.resolve_user("someone-else") is None
        assert OrganizationDirectory.resolve_user(None) is None


class TestVerify:
    def test_wrong_code_rejected(self):
        org, _ = _register()
        _, failure = OrganizationDirectory.verify(org, "XXXXXX")
        assert failure.kind == FailureKind.VALIDATION
        assert org.is_verified is False

    def test_code_is_case_insensitive_and_verify_is_idempotent(self):
        org, _ = _register()
        code = org.verification_code

        verified, failure = OrganizationDirectory.verify(org, code.lower())
        assert failure is None
        assert verified.is_verified
        assert verified.verification_code is None

        again, failure = OrganizationDirectory.verify(org, "anything")
        assert failure is None
        assert again.is_verified


class TestProfile:
    def test_partial_contact_update(self):
        org, _ = _register()
        updated, failure = OrganizationDirectory.update_profile(org, contact={"phone": "+47 1"})

        assert failure is None
        assert updated.contact_phone == "+47 1"
        assert updated.contact_email == CONTACT["email"]

    def test_update_rejects_invalid_email(self):
        org, _ = _register()
        _, failure = OrganizationDirectory.update_profile(org, contact={"email": "nope"})
        assert failure.kind == FailureKind.VALIDATION
        assert db.session.get(Organization, org.id).contact_email == CONTACT["email"]

    def test_public_projection_has_no_contact(self):
        org, _ = _register()
        assert org.to_public_dict() == {"id": org.id, "handle": org.handle}
