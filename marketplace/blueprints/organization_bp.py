"""
Member Resource Marketplace
Organization Blueprint — registration and profile.

Endpoints:
    POST  /api/v1/organizations             register the caller's organization
    GET   /api/v1/organizations/me          own handle, name and contact record
    PATCH /api/v1/organizations/me          update name / contact record
    POST  /api/v1/organizations/me/verify   confirm the emailed verification code
    GET   /api/v1/organizations/<id>        public projection (id + handle only)
"""

import logging

from flask import Blueprint, g, jsonify, request

from marketplace.blueprints import json_object
from marketplace.middleware.identity import require_organization, require_user
from marketplace.services.directory_service import OrganizationDirectory
from marketplace.utils.errors import E, api_error, failure_response

logger = logging.getLogger(__name__)

organization_bp = Blueprint("organization_bp", __name__, url_prefix="/api/v1/organizations")


@organization_bp.route("", methods=["POST"])
@require_user
def register_organization():
    """Create the caller's organization and send the verification email."""
    data = json_object()
    contact = data.get("contact")
    if contact is not None and not isinstance(contact, dict):
        return api_error(E.VALIDATION_INVALID, "contact must be an object")

    org, failure = OrganizationDirectory.register(
        user_id=g.user_id, name=data.get("name"), contact=contact or {},
    )
    if failure:
        return failure_response(failure)
    return jsonify(org.to_profile_dict()), 201


@organization_bp.route("/me", methods=["GET"])
@require_organization
def get_my_organization():
    return jsonify(g.organization.to_profile_dict())


@organization_bp.route("/me", methods=["PATCH"])
@require_organization
def update_my_organization():
    data = json_object()
    contact = data.get("contact")
    if contact is not None and not isinstance(contact, dict):
        return api_error(E.VALIDATION_INVALID, "contact must be an object")

    org, failure = OrganizationDirectory.update_profile(
        g.organization, name=data.get("name"), contact=contact,
    )
    if failure:
        return failure_response(failure)
    return jsonify(org.to_profile_dict())


@organization_bp.route("/me/verify", methods=["POST"])
@require_organization
def verify_my_organization():
    data = json_object()
    org, failure = OrganizationDirectory.verify(g.organization, data.get("code"))
    if failure:
        return failure_response(failure)
    return jsonify(org.to_profile_dict())


@organization_bp.route("/<org_id>", methods=["GET"])
@require_user
def get_organization(org_id):
    """Public projection: never includes the real contact record."""
    org = OrganizationDirectory.get(org_id)
    if org is None:
        return api_error(E.NOT_FOUND, "Organization not found")
    return jsonify(org.to_public_dict())
