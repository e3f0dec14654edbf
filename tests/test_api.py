"""HTTP tests through the Flask test client."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import requests

from conftest import registration, volunteer
from models import CoopSession


def _batch(coop, registrations, assignments=(), **extra):
    payload = {
        "sessionId": coop.session_id,
        "registrations": registrations,
        "volunteerAssignments": list(assignments),
    }
    payload.update(extra)
    return payload


class TestHealthAndAuth:
    def test_health_needs_no_token(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}

    def test_internal_key_error_is_a_500(self, app):
        @app.route("/broken")
        def broken():
            return {}["missing"]

        response = app.test_client().get("/broken")
        assert response.status_code == 500
        assert response.get_json() == {"error": "Internal server error"}

    def test_missing_record_is_still_a_404(self, client, coop, auth_headers):
        response = client.get(
            f"/admin/schedule/{coop.session_id}/drafts/nope",
            headers=auth_headers(coop.admin, "admin"),
        )
        assert response.status_code == 404
        assert response.get_json() == {"error": "Draft not found"}

    def test_missing_token(self, client, coop):
        response = client.post("/registration/batch", json=_batch(coop, []))
        assert response.status_code == 401

    def test_token_signed_with_another_key(self, client, coop):
        import auth

        token = auth.issue_token(coop.ana, secret="wrong-secret")
        response = client.post(
            "/registration/batch",
            json=_batch(coop, []),
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401

    def test_families_cannot_reach_admin_routes(self, client, coop, auth_headers):
        response = client.get(f"/admin/schedule/{coop.session_id}/drafts", headers=auth_headers(coop.ana))
        assert response.status_code == 403

    def test_moderators_cannot_decide_overrides(self, client, coop, auth_headers):
        response = client.get("/admin/registration-overrides", headers=auth_headers(coop.moderator, "moderator"))
        assert response.status_code == 403

    def test_remote_role_lookup(self, app, client, coop, auth_headers):
        app.config["AUTH_API_URL"] = "https://auth.example.test"
        app.config["AUTH_API_KEY"] = "key-123"
        role_response = MagicMock()
        role_response.json.return_value = {"role": "user"}
        role_response.raise_for_status.return_value = None
        with patch("auth.requests.get", return_value=role_response) as fake_get:
            response = client.get(
                "/admin/registration-overrides",
                headers=auth_headers(coop.admin, "admin"),
            )
        assert response.status_code == 403
        fake_get.assert_called_once()
        args, kwargs = fake_get.call_args
        assert args[0] == f"https://auth.example.test/api/user/{coop.admin}/role"
        assert kwargs["headers"] == {"x-api-key": "key-123"}

    def test_remote_role_lookup_failure_falls_back_to_token(self, app, client, coop, auth_headers):
        app.config["AUTH_API_URL"] = "https://auth.example.test"
        with patch("auth.requests.get", side_effect=requests.ConnectionError("down")):
            response = client.get(
                "/admin/registration-overrides",
                headers=auth_headers(coop.admin, "admin"),
            )
        assert response.status_code == 200


class TestBatchEndpoint:
    """Status codes for each outcome of POST /registration/batch."""

    def test_hours_unmet_is_400(self, client, coop, auth_headers):
        response = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.art_slot, coop.mia)]),
            headers=auth_headers(coop.ana),
        )
        body = response.get_json()
        assert response.status_code == 400
        assert body["canRequestOverride"] is True
        assert body["requiredHours"] == 1
        assert body["fulfilledHours"] == 0

    def test_commit_is_200(self, client, coop, auth_headers):
        response = client.post(
            "/registration/batch",
            json=_batch(
                coop,
                [registration(coop.art_slot, coop.mia)],
                [volunteer(coop.ana, "helper", schedule_id=coop.art_slot)],
            ),
            headers=auth_headers(coop.ana),
        )
        body = response.get_json()
        assert response.status_code == 200
        assert body["success"] is True
        assert (body["registeredCount"], body["volunteerCount"]) == (1, 1)

    def test_conflicts_are_409(self, client, coop, auth_headers):
        response = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.art_slot, coop.mia), registration(coop.science_slot, coop.mia)]),
            headers=auth_headers(coop.ana),
        )
        assert response.status_code == 409
        assert response.get_json()["conflicts"][0]["type"] == "child_conflict"

    def test_bad_input_is_400(self, client, coop, auth_headers):
        response = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.art_slot, coop.ada)]),
            headers=auth_headers(coop.ana),
        )
        assert response.status_code == 400
        assert response.get_json() == {"error": "Child does not belong to this family"}

    def test_unknown_family_is_404(self, client, coop, auth_headers):
        response = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.art_slot, coop.mia)]),
            headers=auth_headers("stranger"),
        )
        assert response.status_code == 404
        assert response.get_json() == {"error": "Family not found"}

    def test_closed_window_is_403(self, client, coop, auth_headers, session_factory):
        with session_factory() as session:
            term = session.get(CoopSession, coop.session_id)
            term.registration_start = datetime.utcnow() - timedelta(days=20)
            term.registration_end = datetime.utcnow() - timedelta(days=10)
            session.commit()
        response = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.art_slot, coop.mia)]),
            headers=auth_headers(coop.ana),
        )
        assert response.status_code == 403
        assert response.get_json()["error"].startswith("Registration closed on")

    def test_duplicate_pending_override_is_409(self, client, coop, auth_headers):
        payload = _batch(coop, [registration(coop.art_slot, coop.mia)], requestAdminOverride=True)
        first = client.post("/registration/batch", json=payload, headers=auth_headers(coop.ana))
        assert first.status_code == 200
        assert first.get_json()["adminOverrideRequested"] is True

        second = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.music_slot, coop.leo, "second")], requestAdminOverride=True),
            headers=auth_headers(coop.ana),
        )
        assert second.status_code == 409

    def test_preview_and_family_status(self, client, coop, auth_headers):
        preview = client.post(
            "/registration/preview",
            json=_batch(coop, [registration(coop.art_slot, coop.mia)]),
            headers=auth_headers(coop.ana),
        )
        assert preview.status_code == 200
        assert preview.get_json()["canRequestOverride"] is True

        client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.lunch_slot, coop.mia, "lunch")]),
            headers=auth_headers(coop.ana),
        )
        status = client.get(
            f"/registration/family-status?sessionId={coop.session_id}",
            headers=auth_headers(coop.ana),
        ).get_json()
        assert status["familyId"] == coop.rivera
        assert [(r["className"], r["status"]) for r in status["registrations"]] == [("Lunch Club", "registered")]
        assert status["fees"]["totalFee"] == 100.0


class TestOverrideEndpoints:
    def test_admin_approves_and_family_resubmits(self, client, coop, auth_headers):
        client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.art_slot, coop.mia)], requestAdminOverride=True),
            headers=auth_headers(coop.ana),
        )
        listed = client.get(
            f"/admin/registration-overrides?sessionId={coop.session_id}",
            headers=auth_headers(coop.admin, "admin"),
        ).get_json()
        assert listed["count"] == 1
        override_id = listed["requests"][0]["id"]

        decided = client.patch(
            f"/admin/registration-overrides/{override_id}",
            json={"action": "approve"},
            headers=auth_headers(coop.admin, "admin"),
        )
        assert decided.status_code == 200
        assert decided.get_json()["status"] == "approved"

        again = client.post(
            "/registration/batch",
            json=_batch(coop, [registration(coop.music_slot, coop.leo, "second")]),
            headers=auth_headers(coop.ana),
        )
        assert again.status_code == 200
        assert again.get_json()["registeredCount"] == 1

    def test_unknown_action(self, client, coop, auth_headers):
        response = client.patch(
            "/admin/registration-overrides/whatever",
            json={"action": "maybe"},
            headers=auth_headers(coop.admin, "admin"),
        )
        assert response.status_code == 400


class TestDraftEndpoints:
    def test_draft_lifecycle_and_conflicts(self, client, coop, auth_headers):
        admin = auth_headers(coop.admin, "admin")
        moderator = auth_headers(coop.moderator, "moderator")
        base = f"/admin/schedule/{coop.session_id}/drafts"

        created = client.post(base, json={"name": "Plan A"}, headers=admin)
        assert created.status_code == 201
        draft_a = created.get_json()["draft"]["id"]
        draft_b = client.post(
            base,
            json={
                "name": "Plan B",
                "entries": [{"classTeachingRequestId": coop.music, "classroomId": coop.room1, "period": "first"}],
            },
            headers=moderator,
        ).get_json()["draft"]["id"]

        saved = client.put(
            f"{base}/{draft_a}",
            json={"entries": [{"classTeachingRequestId": coop.art, "classroomId": coop.room1, "period": "first"}]},
            headers=admin,
        )
        assert saved.status_code == 200
        assert saved.get_json()["draft"]["entryCount"] == 1

        conflicts = client.get(f"/admin/schedule/{coop.session_id}/conflicts", headers=admin).get_json()
        assert conflicts["count"] == 1
        assert conflicts["conflicts"][0]["slotKey"] == f"{coop.room1}|first"

        listed = client.get(base, headers=moderator).get_json()
        assert len(listed["drafts"]) == 2
        assert len(listed["conflicts"]) == 1

        forbidden = client.delete(f"{base}/{draft_a}", headers=moderator)
        assert forbidden.status_code == 403

        opened = client.post(f"{base}/{draft_b}/open", headers=moderator)
        assert opened.status_code == 200
        current = client.get(f"{base}/current", headers=moderator).get_json()
        assert current["draft"]["id"] == draft_b

        assert client.delete(f"{base}/{draft_b}", headers=moderator).status_code == 200
        assert client.get(f"{base}/{draft_b}", headers=moderator).status_code == 404

    def test_published_schedule_rejects_edits(self, client, coop, auth_headers):
        admin = auth_headers(coop.admin, "admin")
        response = client.post(f"/admin/schedule/{coop.session_id}/pullback", headers=admin)
        assert response.status_code == 409
        response = client.post(
            f"/admin/schedule/{coop.session_id}/slots",
            json={"classTeachingRequestId": coop.music, "classroomId": coop.room2, "period": "third"},
            headers=admin,
        )
        assert response.status_code == 409

    def test_live_schedule(self, client, coop, auth_headers):
        body = client.get(f"/admin/schedule/{coop.session_id}", headers=auth_headers(coop.moderator, "moderator")).get_json()
        assert body["status"] == "published"
        assert [entry["period"] for entry in body["entries"]] == ["first", "first", "second", "lunch"]
