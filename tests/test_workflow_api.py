"""
API tests: entities, stage transitions, approvals and role assignments.

    200 applied · 202 pending approval · 409 stale stage · 422 invalid transition
    403 when the caller does not hold the decision role
"""

import pytest

BASE = "/api/v1"
CHAIN = ["technical_lead", "budget_officer", "municipality_director", "gdisb_admin"]


def _create(client, entity_type="Pilot", title="Smart parking", **fields):
    res = client.post(
        f"{BASE}/entities",
        json={"entity_type": entity_type, "title": title, "fields": fields},
        headers={"X-User": "creator"},
    )
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _transition(client, entity_id, from_stage, to_stage, user="creator"):
    return client.post(
        f"{BASE}/entities/{entity_id}/transition",
        json={"from_stage": from_stage, "to_stage": to_stage},
        headers={"X-User": user},
    )


def _decide(client, request_id, role, outcome="approved", user=None):
    return client.post(
        f"{BASE}/approvals/{request_id}/decide",
        json={"role": role, "outcome": outcome},
        headers={"X-User": user or f"user-{role}"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Workflow configuration
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowConfig:
    def test_list_workflows(self, client):
        res = client.get(f"{BASE}/workflows")
        assert res.status_code == 200
        assert "Pilot" in res.get_json()["entity_types"]

    def test_stages(self, client):
        data = client.get(f"{BASE}/workflows/Pilot/stages").get_json()
        assert data["initial"] == "design"
        assert data["stages"][0] == "design"
        assert set(data["terminal"]) == {"scaled", "terminated"}

    def test_unknown_type(self, client):
        res = client.get(f"{BASE}/workflows/Spaceship/stages")
        assert res.status_code == 422
        assert res.get_json()["code"] == "WF_UNKNOWN_ENTITY_TYPE"

    def test_gate_lookup(self, client):
        data = client.get(f"{BASE}/workflows/Pilot/gates?from=approval_pending&to=approved").get_json()
        assert data["gate"]["approvers"] == CHAIN

        data = client.get(f"{BASE}/workflows/Pilot/gates?from=monitoring&to=evaluation").get_json()
        assert data["gate"] is None
        assert data["transition_exists"] is True

    def test_next_stages(self, client):
        data = client.get(f"{BASE}/workflows/Pilot/stages/completed/next").get_json()
        assert {t["to_stage"] for t in data["transitions"]} == {"scaled"}

    def test_next_stages_unknown_stage(self, client):
        assert client.get(f"{BASE}/workflows/Pilot/stages/flying/next").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Entities
# ═════════════════════════════════════════════════════════════════════════════


class TestEntities:
    def test_create_starts_at_initial_stage(self, client):
        data = _create(client, sector="mobility")
        assert data["stage"] == "design"
        assert data["stage_version"] == 1
        assert data["fields"] == {"sector": "mobility"}
        assert data["created_by"] == "creator"

    def test_create_requires_title(self, client):
        res = client.post(f"{BASE}/entities", json={"entity_type": "Pilot"})
        assert res.status_code == 400

    def test_create_rejects_stage(self, client):
        res = client.post(f"{BASE}/entities", json={"entity_type": "Pilot", "title": "x", "stage": "active"})
        assert res.status_code == 400

    def test_create_unknown_type(self, client):
        res = client.post(f"{BASE}/entities", json={"entity_type": "Rocket", "title": "x"})
        assert res.status_code == 422

    def test_engine_fields_protected(self, client):
        res = client.post(f"{BASE}/entities", json={
            "entity_type": "Pilot", "title": "x", "fields": {"stage": "scaled"},
        })
        assert res.status_code == 422

    def test_get_with_transitions(self, client):
        entity = _create(client)
        data = client.get(f"{BASE}/entities/{entity['id']}").get_json()
        targets = {t["to_stage"] for t in data["available_transitions"]}
        assert "approval_pending" in targets
        assert "on_hold" in targets

    def test_update_merges_fields(self, client):
        entity = _create(client, sector="mobility", budget=10)
        res = client.put(f"{BASE}/entities/{entity['id']}", json={"fields": {"budget": None, "kpi": "x"}})
        assert res.status_code == 200
        assert res.get_json()["fields"] == {"sector": "mobility", "kpi": "x"}

    def test_update_cannot_set_stage(self, client):
        entity = _create(client)
        res = client.put(f"{BASE}/entities/{entity['id']}", json={"stage": "scaled"})
        assert res.status_code == 400

    def test_list_filters(self, client):
        _create(client)
        _create(client, entity_type="Challenge", title="Flooding")
        data = client.get(f"{BASE}/entities?entity_type=Challenge").get_json()
        assert data["total"] == 1
        assert data["items"][0]["stage"] == "draft"

    def test_soft_delete(self, client):
        entity = _create(client)
        assert client.delete(f"{BASE}/entities/{entity['id']}").status_code == 200
        assert client.get(f"{BASE}/entities/{entity['id']}").status_code == 404
        data = client.get(f"{BASE}/entities?include_deleted=true").get_json()
        assert data["items"][0]["is_deleted"] is True

    def test_not_found(self, client):
        res = client.get(f"{BASE}/entities/missing")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_ungated_applied(self, client):
        entity = _create(client)
        res = _transition(client, entity["id"], "design", "approval_pending")
        assert res.status_code == 200
        data = res.get_json()
        assert data["result"] == "applied"
        assert data["entity"]["stage"] == "approval_pending"
        assert data["stage_version"] == 2

    def test_gated_pending(self, client):
        entity = _create(client)
        _transition(client, entity["id"], "design", "approval_pending")
        res = _transition(client, entity["id"], "approval_pending", "approved")
        assert res.status_code == 202
        data = res.get_json()
        assert data["result"] == "pending_approval"
        assert data["pending_role"] == "technical_lead"
        assert data["entity"]["stage"] == "approval_pending"

    def test_stale(self, client):
        entity = _create(client)
        res = _transition(client, entity["id"], "active", "monitoring")
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "WF_STALE_STAGE_ASSUMPTION"
        assert body["details"]["current_stage"] == "design"

    def test_invalid(self, client):
        entity = _create(client)
        res = _transition(client, entity["id"], "design", "scaled")
        assert res.status_code == 422
        assert res.get_json()["code"] == "WF_INVALID_TRANSITION"

    def test_missing_stages(self, client):
        entity = _create(client)
        res = client.post(f"{BASE}/entities/{entity['id']}/transition", json={"to_stage": "x"})
        assert res.status_code == 400

    def test_non_json_body(self, client):
        entity = _create(client)
        res = client.post(
            f"{BASE}/entities/{entity['id']}/transition",
            data="from_stage=design", content_type="text/plain",
        )
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def pending_pilot(client):
    entity = _create(client)
    _transition(client, entity["id"], "design", "approval_pending")
    res = _transition(client, entity["id"], "approval_pending", "approved")
    return entity["id"], res.get_json()["request_id"]


class TestApprovals:
    def test_decision_requires_role(self, client, pending_pilot):
        _, request_id = pending_pilot
        res = _decide(client, request_id, "technical_lead", user="intruder")
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_full_chain(self, client, pending_pilot, pilot_approvers):
        entity_id, request_id = pending_pilot
        for role in CHAIN[:-1]:
            res = _decide(client, request_id, role)
            assert res.status_code == 200
            assert res.get_json()["stage_changed"] is False

        res = _decide(client, request_id, "gdisb_admin")
        data = res.get_json()
        assert data["stage"] == "approved"
        assert data["request"]["status"] == "approved"
        assert client.get(f"{BASE}/entities/{entity_id}").get_json()["stage"] == "approved"

    def test_rejection_keeps_stage(self, client, pending_pilot, pilot_approvers):
        entity_id, request_id = pending_pilot
        for role in CHAIN[:-1]:
            _decide(client, request_id, role)
        res = _decide(client, request_id, "gdisb_admin", outcome="rejected")
        assert res.status_code == 200
        assert res.get_json()["request"]["status"] == "rejected"
        assert client.get(f"{BASE}/entities/{entity_id}").get_json()["stage"] == "approval_pending"

        res = _decide(client, request_id, "gdisb_admin")
        assert res.status_code == 409
        assert res.get_json()["code"] == "WF_REQUEST_ALREADY_TERMINAL"

    def test_out_of_order(self, client, pending_pilot, pilot_approvers):
        _, request_id = pending_pilot
        res = _decide(client, request_id, "budget_officer")
        assert res.status_code == 409
        assert res.get_json()["code"] == "WF_OUT_OF_ORDER_APPROVAL"

    def test_bad_outcome(self, client, pending_pilot, pilot_approvers):
        _, request_id = pending_pilot
        res = _decide(client, request_id, "technical_lead", outcome="abstain")
        assert res.status_code == 400

    def test_pending_queue(self, client, pending_pilot, pilot_approvers):
        _, request_id = pending_pilot
        data = client.get(f"{BASE}/approvals/pending?role=technical_lead").get_json()
        assert [r["id"] for r in data["items"]] == [request_id]

        data = client.get(f"{BASE}/approvals/pending", headers={"X-User": "user-budget_officer"}).get_json()
        assert data["total"] == 0
        assert client.get(f"{BASE}/approvals/pending").status_code == 400

    def test_history(self, client, pending_pilot, pilot_approvers):
        entity_id, request_id = pending_pilot
        _decide(client, request_id, "technical_lead", outcome="rejected")
        _transition(client, entity_id, "approval_pending", "approved")

        history = client.get(f"{BASE}/entities/{entity_id}/approvals").get_json()
        assert [r["status"] for r in history] == ["rejected", "pending"]
        detail = client.get(f"{BASE}/approvals/{request_id}").get_json()
        assert detail["decisions"][0]["decided_by"] == "user-technical_lead"

    def test_unknown_request(self, client):
        assert client.get(f"{BASE}/approvals/999").status_code == 404


class TestRoleAssignments:
    def test_assign_list_revoke(self, client):
        res = client.post(f"{BASE}/role-assignments", json={"user_id": "u1", "role": "budget_officer"},
                          headers={"X-User": "admin"})
        assert res.status_code == 201
        assignment = res.get_json()
        assert assignment["assigned_by"] == "admin"

        assert len(client.get(f"{BASE}/role-assignments?user_id=u1").get_json()) == 1
        dup = client.post(f"{BASE}/role-assignments", json={"user_id": "u1", "role": "budget_officer"})
        assert dup.status_code == 409

        assert client.delete(f"{BASE}/role-assignments/{assignment['id']}").status_code == 200
        assert client.get(f"{BASE}/role-assignments?user_id=u1").get_json() == []

    def test_assign_requires_fields(self, client):
        assert client.post(f"{BASE}/role-assignments", json={"user_id": "u1"}).status_code == 400
