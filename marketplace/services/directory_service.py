"""
Member Resource Marketplace
Identity & Organization Directory.

Maps an authenticated user (id issued by the external identity provider)
to exactly one organization, assigns pseudonymous handles, and lets the
owner maintain the organization's real contact record.

Handles look like ``member_k3x9q``: a configurable prefix plus five random
base-36 characters, unique and never reused (organizations are never deleted).
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email
from flask import current_app
from sqlalchemy.exc import IntegrityError

from marketplace.core.failures import Failure, FailureKind
from marketplace.models import db
from marketplace.models.organization import CONTACT_FIELDS, Organization
from marketplace.services.email_service import EmailService
from marketplace.services.helpers.store_guard import store_operation

logger = logging.getLogger(__name__)

_HANDLE_ALPHABET = string.ascii_lowercase + string.digits
_HANDLE_ATTEMPTS = 8
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _new_handle():
    prefix = current_app.config.get("HANDLE_PREFIX", "member_")
    return prefix + "".join(secrets.choice(_HANDLE_ALPHABET) for _ in range(5))


def _new_verification_code():
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))


def _validate_contact(contact: dict, *, partial: bool) -> dict:
    """Return field errors for a contact record payload.

    A valid email is replaced in ``contact`` by its normalized form.
    """
    errors = {}
    for key, value in contact.items():
        if key not in CONTACT_FIELDS:
            errors[key] = "unknown contact field"
        elif value is not None and not isinstance(value, str):
            errors[key] = "must be a string"
    if (not partial or "company_name" in contact) and "company_name" not in errors:
        if not str(contact.get("company_name") or "").strip():
            errors["company_name"] = "is required"
    if (not partial or "email" in contact) and "email" not in errors:
        try:
            valid = validate_email(str(contact.get("email") or "").strip(), check_deliverability=False)
            contact["email"] = valid.normalized
        except EmailNotValidError as e:
            errors["email"] = f"must be a valid email address ({e})"
    return errors


class OrganizationDirectory:
    """Stateless service class for organization lookup and registration."""

    @staticmethod
    @store_operation("directory.resolve_user")
    def resolve_user(user_id):
        """Return the caller's Organization, or None if not yet registered."""
        if not user_id:
            return None
        return Organization.query.filter_by(user_id=str(user_id)).first()

    @staticmethod
    def get(org_id):
        return db.session.get(Organization, org_id)

    @staticmethod
    @store_operation("directory.register")
    def register(*, user_id, name, contact):
        """
        Register the organization owned by ``user_id``.

        Assigns a unique handle and a verification code, then sends the
        verification email (best-effort).

        Returns:
            (Organization, None) on success.
            (None, Failure) on validation failure or when the user already
            owns an organization (CONFLICT).
        """
        if name is not None and not isinstance(name, str):
            return None, Failure.validation("Invalid organization", {"name": "must be a string"})
        name = (name or "").strip()
        contact = dict(contact or {})
        errors = _validate_contact(contact, partial=False)
        if not name:
            errors["name"] = "is required"
        if errors:
            return None, Failure.validation("Invalid organization", errors)

        if OrganizationDirectory.resolve_user(user_id) is not None:
            return None, Failure(
                FailureKind.CONFLICT, "This user already owns an organization",
                {"user_id": str(user_id)},
            )

        org = None
        for _ in range(_HANDLE_ATTEMPTS):
            handle = _new_handle()
            if Organization.query.filter_by(handle=handle).first() is not None:
                continue
            org = Organization(
                user_id=str(user_id),
                handle=handle,
                name=name,
                contact_company_name=contact["company_name"].strip(),
                contact_email=contact["email"].strip(),
                contact_phone=str(contact.get("phone") or "").strip(),
                contact_address=str(contact.get("address") or "").strip(),
                verification_code=_new_verification_code(),
            )
            db.session.add(org)
            try:
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                org = None
                # Either the handle raced or the user registered concurrently
                if OrganizationDirectory.resolve_user(user_id) is not None:
                    return None, Failure(
                        FailureKind.CONFLICT, "This user already owns an organization",
                        {"user_id": str(user_id)},
                    )

        if org is None:
            raise RuntimeError("Could not allocate a unique organization handle")

        logger.info("Organization registered", extra={"org_id": org.id, "handle": org.handle})

        EmailService.send_from_template(
            to_email=org.contact_email,
            to_name=org.contact_company_name,
            template_name="organization_verification",
            context={
                "company_name": org.contact_company_name,
                "handle": org.handle,
                "code": org.verification_code,
            },
            category="verification",
            organization_id=org.id,
        )
        db.session.commit()
        return org, None

    @staticmethod
    @store_operation("directory.verify")
    def verify(org, code):
        """Confirm the verification code sent at registration. Idempotent."""
        if org.is_verified:
            return org, None
        if not isinstance(code, str) or code.strip().upper() != (org.verification_code or ""):
            return None, Failure.validation("Invalid verification code", {"code": "does not match"})
        org.verified_at = datetime.now(timezone.utc)
        org.verification_code = None
        db.session.commit()
        logger.info("Organization verified", extra={"org_id": org.id})
        return org, None

    @staticmethod
    @store_operation("directory.update_profile")
    def update_profile(org, *, name=None, contact=None):
        """Owner-only update of the display name and real contact record."""
        contact = dict(contact or {})
        errors = _validate_contact(contact, partial=True)
        if name is not None and not isinstance(name, str):
            errors["name"] = "must be a string"
        elif name is not None and not name.strip():
            errors["name"] = "must not be empty"
        if errors:
            return None, Failure.validation("Invalid profile update", errors)

        if name is not None:
            org.name = name.strip()
        for key, value in contact.items():
            setattr(org, f"contact_{key}", (value or "").strip())
        db.session.commit()
        logger.info("Organization profile updated", extra={"org_id": org.id})
        return org, None
