"""
Member Resource Marketplace
Tests — Listing API.

Covers:
    - Create (201, field errors, window check)
    - Marketplace view (expired/reserved hidden, as_of, grouped)
    - Mine / reserved views
    - Owner shown by handle only, is_mine flag
    - Reserver shown to the owner and the reserver only
"""

from datetime import datetime, timedelta, timezone

from marketplace.models.listing import (
    CATEGORY_OFFERING_SPECIAL_SKILL,
    CATEGORY_OFFERING_TOOL,
    LISTING_CATEGORIES,
)
from marketplace.services.negotiation_service import NegotiationEngine


def _today():
    return datetime.now(timezone.utc).date()


def _payload(**kw):
    today = _today()
    payload = {
        "category": CATEGORY_OFFERING_SPECIAL_SKILL,
        "descriptor": "Certified TIG welder",
        "valid_from": today.isoformat(),
        "valid_to": (today + timedelta(days=14)).isoformat(),
        "location": "Stavanger",
        "skill_tags": ["TIG", "ASME IX"],
    }
    payload.update(kw)
    return payload


class TestCreateListing:
    def test_create(self, client, auth_headers, make_org):
        org = make_org()
        res = client.post("/api/v1/listings", json=_payload(), headers=auth_headers(org))
        assert res.status_code == 201
        data = res.get_json()
        assert data["state"] == "open"
        assert data["is_mine"] is True
        assert data["skill_tags"] == ["TIG", "ASME IX"]
        assert data["owner"] == {"id": org.id, "handle": org.handle}

    def test_field_errors(self, client, auth_headers, make_org):
        org = make_org()
        res = client.post(
            "/api/v1/listings",
            json=_payload(category="boats", descriptor="", valid_from="soon"),
            headers=auth_headers(org),
        )
        assert res.status_code == 400
        details = res.get_json()["details"]
        assert {"category", "descriptor", "valid_from"} <= set(details)

    def test_non_string_text_fields(self, client, auth_headers, make_org):
        org = make_org()
        res = client.post(
            "/api/v1/listings",
            json=_payload(descriptor=["x"], location=5, notes={"a": 1}, contact_info=False),
            headers=auth_headers(org),
        )
        assert res.status_code == 400
        details = res.get_json()["details"]
        assert details["descriptor"] == "must be a string"
        assert {"location", "notes", "contact_info"} <= set(details)

    def test_non_finite_price(self, client, auth_headers, make_org):
        org = make_org()
        for price in ("NaN", "Infinity"):
            res = client.post("/api/v1/listings", json=_payload(price=price), headers=auth_headers(org))
            assert res.status_code == 400
            assert "price" in res.get_json()["details"]

    def test_window_must_not_be_inverted(self, client, auth_headers, make_org):
        org = make_org()
        today = _today()
        res = client.post(
            "/api/v1/listings",
            json=_payload(valid_from=(today + timedelta(days=3)).isoformat(), valid_to=today.isoformat()),
            headers=auth_headers(org),
        )
        assert res.status_code == 400

    def test_skill_tags_must_be_list(self, client, auth_headers, make_org):
        org = make_org()
        res = client.post(
            "/api/v1/listings", json=_payload(skill_tags="TIG"), headers=auth_headers(org),
        )
        assert res.status_code == 400

    def test_requires_organization(self, client, auth_headers):
        res = client.post("/api/v1/listings", json=_payload(), headers=auth_headers("idp-x"))
        assert res.status_code == 403


class TestMarketplace:
    def test_hides_expired_and_reserved(self, client, auth_headers, make_org, make_listing):
        owner, bidder, viewer = make_org(), make_org(), make_org()
        today = _today()
        visible = make_listing(owner, descriptor="Visible")
        make_listing(
            owner, descriptor="Elapsed",
            valid_from=today - timedelta(days=10), valid_to=today - timedelta(days=1),
        )
        taken = make_listing(owner, descriptor="Taken")
        msg, _ = NegotiationEngine.open_thread(taken.id, bidder.id, "Interested")
        NegotiationEngine.award(msg.thread_id, owner.id)

        res = client.get("/api/v1/listings/marketplace", headers=auth_headers(viewer))
        assert res.status_code == 200
        data = res.get_json()
        assert [item["id"] for item in data["items"]] == [visible.id]
        assert data["items"][0]["is_mine"] is False

    def test_as_of_includes_last_valid_day(self, client, auth_headers, make_org, make_listing):
        owner = make_org()
        listing = make_listing(owner)
        last_day = listing.valid_to

        on_last = client.get(
            f"/api/v1/listings/marketplace?as_of={last_day.isoformat()}", headers=auth_headers(owner),
        ).get_json()
        after = client.get(
            f"/api/v1/listings/marketplace?as_of={(last_day + timedelta(days=1)).isoformat()}",
            headers=auth_headers(owner),
        ).get_json()

        assert on_last["total"] == 1
        assert after["total"] == 0

    def test_bad_as_of(self, client, auth_headers, make_org):
        org = make_org()
        res = client.get("/api/v1/listings/marketplace?as_of=yesterday", headers=auth_headers(org))
        assert res.status_code == 400

    def test_grouped_view(self, client, auth_headers, make_org, make_listing):
        owner = make_org()
        make_listing(owner, category=CATEGORY_OFFERING_TOOL, descriptor="Mobile crane")
        make_listing(owner)

        data = client.get(
            "/api/v1/listings/marketplace?grouped=1", headers=auth_headers(owner),
        ).get_json()

        assert [g["category"] for g in data["groups"]] == list(LISTING_CATEGORIES)
        tools = next(g for g in data["groups"] if g["category"] == CATEGORY_OFFERING_TOOL)
        assert tools["label"] == "special tooling"
        assert [item["descriptor"] for item in tools["items"]] == ["Mobile crane"]
        assert data["total"] == 2


class TestOwnViews:
    def test_mine_and_reserved(self, client, auth_headers, make_org, make_listing):
        owner, bidder = make_org(), make_org()
        listing = make_listing(owner)
        msg, _ = NegotiationEngine.open_thread(listing.id, bidder.id, "We can take it")
        NegotiationEngine.award(msg.thread_id, owner.id)

        mine = client.get("/api/v1/listings/mine", headers=auth_headers(owner)).get_json()
        reserved = client.get("/api/v1/listings/reserved", headers=auth_headers(bidder)).get_json()
        nothing = client.get("/api/v1/listings/reserved", headers=auth_headers(owner)).get_json()

        assert [item["id"] for item in mine["items"]] == [listing.id]
        assert mine["items"][0]["state"] == "reserved"
        assert [item["id"] for item in reserved["items"]] == [listing.id]
        assert nothing["total"] == 0

    def test_get_one(self, client, auth_headers, make_org, make_listing):
        owner, viewer = make_org(), make_org()
        listing = make_listing(owner)

        res = client.get(f"/api/v1/listings/{listing.id}", headers=auth_headers(viewer))
        assert res.status_code == 200
        body = res.get_json()
        assert body["owner"]["handle"] == owner.handle
        assert "contact" not in body["owner"]

        missing = client.get("/api/v1/listings/does-not-exist", headers=auth_headers(viewer))
        assert missing.status_code == 404

    def test_reserver_visible_only_to_the_two_parties(self, client, auth_headers, make_org, make_listing):
        owner, bidder, viewer = make_org(), make_org(), make_org()
        listing = make_listing(owner)
        msg, _ = NegotiationEngine.open_thread(listing.id, bidder.id, "We can take it")
        NegotiationEngine.award(msg.thread_id, owner.id)

        url = f"/api/v1/listings/{listing.id}"
        assert client.get(url, headers=auth_headers(owner)).get_json()["reserved_by_org_id"] == bidder.id
        assert client.get(url, headers=auth_headers(bidder)).get_json()["reserved_by_org_id"] == bidder.id
        outsider = client.get(url, headers=auth_headers(viewer)).get_json()
        assert outsider["state"] == "reserved"
        assert outsider["reserved_by_org_id"] is None
