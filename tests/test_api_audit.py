"""
tests/test_api_audit.py — audit trail endpoints and the audit writer.
"""

import pytest

from labops.models.audit import AuditLog, write_audit

BASE = "/api/v1"


@pytest.fixture()
def wp(client, tree_document):
    res = client.post(f"{BASE}/projects", json={"name": "Cryo-EM"})
    project_id = res.get_json()["id"]
    res = client.post(
        f"{BASE}/projects/{project_id}/workpackages",
        json={"name": "Structure", "tasks": tree_document},
    )
    assert res.status_code == 201
    return res.get_json()


def _toggle(client, wp, todo_id="s1-td1", actor="alice"):
    url = f"{BASE}/workpackages/{wp['id']}/tasks/t1/subtasks/s1/todos/{todo_id}/toggle"
    res = client.patch(url, headers={"X-Actor": actor})
    assert res.status_code == 200
    return res


class TestAuditList:
    def test_toggle_is_listed(self, client, wp):
        _toggle(client, wp)

        body = client.get(f"{BASE}/audit", query_string={"entity_type": "workpackage"}).get_json()
        assert body["total"] == 1
        entry = body["items"][0]
        assert entry["action"] == "todo.toggle"
        assert entry["actor"] == "alice"
        assert entry["entity_id"] == wp["id"]
        assert entry["project_id"] == wp["project_id"]

    def test_newest_first(self, client, wp):
        _toggle(client, wp, "s1-td1")
        _toggle(client, wp, "s1-td2", actor="bob")

        items = client.get(f"{BASE}/audit").get_json()["items"]
        assert [i["actor"] for i in items] == ["bob", "alice"]

    def test_filter_by_actor_and_action_prefix(self, client, wp):
        _toggle(client, wp, "s1-td1")
        _toggle(client, wp, "s1-td2", actor="bob")

        by_actor = client.get(f"{BASE}/audit", query_string={"actor": "bob"}).get_json()
        assert by_actor["total"] == 1

        funding = client.get(f"{BASE}/audit", query_string={"action": "funding."}).get_json()
        assert funding["total"] == 0

    def test_funding_commit_carries_account_project(self, client, account):
        res = client.post(
            f"{BASE}/funding/orders/po-1/commit",
            json={"account_id": account.id, "amount": 250, "created_by": "carol"},
        )
        assert res.status_code == 201

        body = client.get(
            f"{BASE}/audit", query_string={"project_id": account.project_id, "action": "funding."},
        ).get_json()
        assert body["total"] == 1
        assert body["items"][0]["entity_type"] == "funding_transaction"
        assert body["items"][0]["actor"] == "carol"

    def test_unknown_entity_type(self, client):
        res = client.get(f"{BASE}/audit", query_string={"entity_type": "requirement"})
        assert res.status_code == 400
        assert "workpackage" in res.get_json()["details"]["allowed"]


class TestAuditDetail:
    def test_get(self, client, wp):
        _toggle(client, wp)
        log_id = client.get(f"{BASE}/audit").get_json()["items"][0]["id"]

        body = client.get(f"{BASE}/audit/{log_id}").get_json()
        assert body["action"] == "todo.toggle"
        assert "progress" in body["diff"]

    def test_missing(self, client):
        res = client.get(f"{BASE}/audit/9999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestWriteAudit:
    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError, match="Unknown audit action"):
            write_audit(entity_type="workpackage", entity_id="wp-1", action="todo.rename")

    def test_blank_actor_defaults_to_system(self):
        log = write_audit(entity_type="workpackage", entity_id="wp-1", action="todo.add", actor="")
        assert log.actor == "system"
        assert AuditLog.query.count() == 1
