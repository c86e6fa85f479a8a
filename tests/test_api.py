"""
HTTP boundary: authentication, status codes, error envelope, role
projection and the public secure-link routes.
"""

from app.models.auth import ROLE_MANAGER


def _token(url: str) -> str:
    return url.rsplit("/", 1)[1]


def _create(client, headers, customer, **overrides):
    body = {
        "client_id": customer.id,
        "title": "Brand refresh",
        "scope_description": "Logo and colour palette",
        "amount": 42000,
        "payment_terms": [{"text": "100% on delivery"}],
        "deliverables": [{"text": "Logo files"}],
    }
    body.update(overrides)
    return client.post("/api/v1/commitments", json=body, headers=headers)


# ═════════════════════════════════════════════════════════════════════════
# AUTH
# ═════════════════════════════════════════════════════════════════════════


class TestAuthentication:
    def test_missing_token_is_401(self, client):
        res = client.get("/api/v1/commitments")
        assert res.status_code == 401
        assert res.get_json() == {"error": "Authentication required", "code": "UNAUTHORIZED"}

    def test_garbage_token_is_401(self, client):
        res = client.get("/api/v1/commitments", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_inactive_user_is_401(self, client, org, make_user, auth_headers):
        gone = make_user(org, is_active=False)
        assert client.get("/api/v1/commitments", headers=auth_headers(gone)).status_code == 401

    def test_non_json_post_is_415(self, client, founder, auth_headers):
        res = client.post(
            "/api/v1/commitments", data="title=x",
            headers={**auth_headers(founder), "Content-Type": "application/x-www-form-urlencoded"},
        )
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════
# COMMITMENTS
# ═════════════════════════════════════════════════════════════════════════


class TestCommitmentEndpoints:
    def test_create_and_fetch(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        res = _create(client, headers, customer)
        assert res.status_code == 201
        created = res.get_json()["commitment"]
        assert created["version"] == 1
        assert created["status"] == "DRAFT"
        assert created["amount"] == 42000
        assert created["client"]["email"] == "priya@acme.test"
        assert created["assignee"]["id"] == founder.id

        res = client.get(f"/api/v1/commitments/{created['id']}", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["commitment"]["title"] == "Brand refresh"

    def test_create_validation_is_422(self, client, founder, customer, auth_headers):
        res = _create(client, auth_headers(founder), customer, title="")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"] == {"title": "required"}

    def test_list_paginates(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        for i in range(3):
            _create(client, headers, customer, title=f"Job {i}")

        res = client.get("/api/v1/commitments?limit=2&page=1", headers=headers)
        body = res.get_json()
        assert body["total"] == 3
        assert len(body["items"]) == 2
        assert body["limit"] == 2

    def test_patch_locked_is_400(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        commitment_id = _create(client, headers, customer).get_json()["commitment"]["id"]
        client.post(f"/api/v1/commitments/{commitment_id}/approval-link", json={}, headers=headers)

        res = client.patch(f"/api/v1/commitments/{commitment_id}", json={"amount": 1}, headers=headers)
        assert res.status_code == 400
        assert res.get_json()["code"] == "INVALID_STATE"

    def test_unknown_commitment_is_404(self, client, founder, auth_headers):
        res = client.get("/api/v1/commitments/9999", headers=auth_headers(founder))
        assert res.status_code == 404
        assert res.get_json() == {"error": "Commitment not found", "code": "NOT_FOUND"}

    def test_manager_never_sees_money(self, client, founder, manager, customer, auth_headers):
        res = _create(client, auth_headers(founder), customer, assigned_to_user_id=manager.id)
        commitment_id = res.get_json()["commitment"]["id"]

        res = client.get(f"/api/v1/commitments/{commitment_id}", headers=auth_headers(manager))
        assert res.status_code == 200
        data = res.get_json()["commitment"]
        assert manager.role == ROLE_MANAGER
        assert "amount" not in data
        assert "currency" not in data

        items = client.get("/api/v1/commitments", headers=auth_headers(manager)).get_json()["items"]
        assert all("amount" not in item for item in items)

    def test_manager_mutation_outside_assignment_is_403(self, client, founder, manager, customer, auth_headers):
        commitment_id = _create(client, auth_headers(founder), customer).get_json()["commitment"]["id"]
        res = client.post(
            f"/api/v1/commitments/{commitment_id}/deliver", json={}, headers=auth_headers(manager),
        )
        assert res.status_code == 403
        assert res.get_json()["code"] == "FORBIDDEN"

    def test_plan_forbidden_is_403(self, client, make_org, make_user, make_client, auth_headers):
        from app.models.auth import PLAN_FREELANCER

        org = make_org(plan=PLAN_FREELANCER)
        founder = make_user(org)
        other = make_user(org)
        customer = make_client(org)

        res = _create(client, auth_headers(founder), customer, assigned_to_user_id=other.id)
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "PLAN_FORBIDDEN"
        assert body["details"] == {"feature": "ASSIGN_COMMITMENT"}

    def test_history_and_lineage(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        commitment_id = _create(client, headers, customer).get_json()["commitment"]["id"]

        events = client.get(f"/api/v1/commitments/{commitment_id}/history", headers=headers).get_json()["events"]
        assert [e["event_type"] for e in events] == ["COMMITMENT_CREATED"]
        lineage = client.get(f"/api/v1/commitments/{commitment_id}/lineage", headers=headers).get_json()["items"]
        assert [c["version"] for c in lineage] == [1]


# ═════════════════════════════════════════════════════════════════════════
# END-TO-END THROUGH THE PUBLIC LINKS
# ═════════════════════════════════════════════════════════════════════════


class TestPublicFlow:
    def test_approve_deliver_accept(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        commitment_id = _create(client, headers, customer).get_json()["commitment"]["id"]

        res = client.post(f"/api/v1/commitments/{commitment_id}/approval-link", json={}, headers=headers)
        assert res.status_code == 200
        token = _token(res.get_json()["approval_url"])

        preview = client.get(f"/api/v1/public/approve/{token}")
        assert preview.status_code == 200
        assert preview.get_json()["version_ok"] is True

        res = client.post(
            f"/api/v1/public/approve/{token}", json={"action": "approve"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "pytest-browser"},
        )
        assert res.status_code == 200
        assert res.get_json() == {"status": "IN_PROGRESS"}

        # Burned
        res = client.post(f"/api/v1/public/approve/{token}", json={"action": "approve"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "LINK_INVALID"

        client.patch(
            f"/api/v1/commitments/{commitment_id}",
            json={"deliverables": [{"text": "Logo files", "status": "DELIVERED"}]},
            headers=headers,
        )
        res = client.post(f"/api/v1/commitments/{commitment_id}/deliver", json={}, headers=headers)
        assert res.get_json()["commitment"]["status"] == "DELIVERED"

        res = client.post(f"/api/v1/commitments/{commitment_id}/acceptance-link", json={}, headers=headers)
        accept_token = _token(res.get_json()["acceptance_url"])
        res = client.post(f"/api/v1/public/accept/{accept_token}", json={"comment": "All good"})
        assert res.get_json() == {"status": "CLOSED"}

        events = client.get(f"/api/v1/commitments/{commitment_id}/history", headers=headers).get_json()["events"]
        approved = next(e for e in events if e["event_type"] == "CLIENT_APPROVED")
        assert approved["actor_type"] == "CLIENT"
        assert approved["meta"] == {"ip": "203.0.113.7", "user_agent": "pytest-browser"}
        assert events[-1]["event_type"] == "CLIENT_ACCEPTED"

    def test_request_change_requires_comment(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        commitment_id = _create(client, headers, customer).get_json()["commitment"]["id"]
        url = client.post(
            f"/api/v1/commitments/{commitment_id}/approval-link", json={}, headers=headers,
        ).get_json()["approval_url"]

        res = client.post(f"/api/v1/public/approve/{_token(url)}", json={"action": "request_change"})
        assert res.status_code == 422
        assert res.get_json()["code"] == "VALIDATION_ERROR"

        res = client.post(
            f"/api/v1/public/approve/{_token(url)}", json={"action": "request_change", "comment": "x" * 1001},
        )
        assert res.status_code == 422

        # Neither attempt burned the token
        res = client.post(
            f"/api/v1/public/approve/{_token(url)}",
            json={"action": "request_change", "comment": "Add a favicon"},
        )
        assert res.status_code == 200
        assert res.get_json()["status"] == "CHANGE_REQUEST_CREATED"

    def test_change_request_accept_over_http(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        commitment_id = _create(client, headers, customer).get_json()["commitment"]["id"]
        url = client.post(
            f"/api/v1/commitments/{commitment_id}/approval-link", json={}, headers=headers,
        ).get_json()["approval_url"]
        change_request_id = client.post(
            f"/api/v1/public/approve/{_token(url)}",
            json={"action": "request_change", "comment": "Add a favicon"},
        ).get_json()["change_request_id"]

        queue = client.get("/api/v1/change-requests?status=OPEN", headers=headers).get_json()
        assert [item["id"] for item in queue["items"]] == [change_request_id]

        res = client.post(
            f"/api/v1/commitments/{commitment_id}/change-requests/{change_request_id}/accept",
            json={"amount": 45000, "resolution_note": "Favicon added"},
            headers=headers,
        )
        assert res.status_code == 201
        fork = res.get_json()["commitment"]
        assert fork["version"] == 2
        assert fork["amount"] == 45000
        assert fork["previous_commitment_id"] == commitment_id

        res = client.post(
            f"/api/v1/commitments/{commitment_id}/change-requests/{change_request_id}/accept",
            json={}, headers=headers,
        )
        assert res.status_code == 404

    def test_stale_link_reports_versions(self, client, founder, customer, auth_headers):
        headers = auth_headers(founder)
        commitment_id = _create(client, headers, customer).get_json()["commitment"]["id"]
        url = client.post(
            f"/api/v1/commitments/{commitment_id}/approval-link", json={}, headers=headers,
        ).get_json()["approval_url"]
        client.patch(
            f"/api/v1/commitments/{commitment_id}",
            json={"payment_terms": [{"text": "50% upfront"}, {"text": "50% on delivery"}]},
            headers=headers,
        )

        res = client.post(f"/api/v1/public/approve/{_token(url)}", json={"action": "approve"})
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "LINK_OLD_VERSION"
        assert body["details"] == {"link_version": 1, "current_version": 2}

    def test_public_responses_are_not_cacheable(self, client):
        res = client.get("/api/v1/public/approve/" + "0" * 64)
        assert res.status_code == 400
        assert res.headers["Cache-Control"] == "no-store"
        assert res.headers["Referrer-Policy"] == "no-referrer"
        assert res.headers["X-Content-Type-Options"] == "nosniff"


# ═════════════════════════════════════════════════════════════════════════
# CLIENTS, SETTINGS, HEALTH
# ═════════════════════════════════════════════════════════════════════════


class TestSupportingEndpoints:
    def test_client_crud(self, client, founder, auth_headers):
        headers = auth_headers(founder)
        res = client.post("/api/v1/clients", json={"name": "Meera", "email": "meera@x.test"}, headers=headers)
        assert res.status_code == 201
        client_id = res.get_json()["client"]["id"]

        assert client.post(
            "/api/v1/clients", json={"name": "Meera 2", "email": "meera@x.test"}, headers=headers,
        ).status_code == 409

        res = client.patch(f"/api/v1/clients/{client_id}", json={"company_name": "Meera Design"}, headers=headers)
        assert res.get_json()["client"]["company_name"] == "Meera Design"

        assert client.delete(f"/api/v1/clients/{client_id}", headers=headers).status_code == 204
        assert client.get(f"/api/v1/clients/{client_id}", headers=headers).status_code == 404

    def test_settings_roundtrip(self, client, founder, manager, auth_headers):
        res = client.patch(
            "/api/v1/settings/organization",
            json={"approval_defaults": {"acceptance_required": False}},
            headers=auth_headers(founder),
        )
        assert res.status_code == 200
        assert res.get_json()["organization"]["approval_defaults"]["acceptance_required"] is False

        res = client.put(
            "/api/v1/settings/organization", json={"name": "Nope"}, headers=auth_headers(manager),
        )
        assert res.status_code == 403

        items = client.get("/api/v1/settings/activity", headers=auth_headers(founder)).get_json()["items"]
        assert [i["action"] for i in items] == ["ORG_SETTINGS_UPDATED"]

    def test_health(self, client):
        assert client.get("/api/v1/health").get_json() == {"status": "ok", "app": "Commitment Ledger"}
        assert client.get("/api/v1/health/ready").status_code == 200

        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["mail"]["mode"] == "log-only"

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "NOT_FOUND"
