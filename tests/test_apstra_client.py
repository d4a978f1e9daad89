import pytest

from apstra_client.core.apstra_client import AUTH_HEADER, ApstraClient, blueprint_id_from_url
from apstra_client.core.errors import (
    ApstraAuthError,
    ApstraHttpError,
    ApstraNotFoundError,
    ApstraProtocolError,
    ApstraTaskFailedError,
    TaskUnknownError,
)
from apstra_client.core.task_monitor import TaskMonitorOptions

from conftest import PASSWORD, USER

FAST = TaskMonitorOptions(first_check_delay_sec=0.01, poll_interval_sec=0.01)


@pytest.fixture()
def client(apstra_server):
    base_url, _ = apstra_server
    c = ApstraClient(base_url, USER, PASSWORD, timeout_sec=2, monitor_options=FAST)
    yield c
    c.close()


def test_constructor_requires_url_user_password():
    with pytest.raises(ValueError):
        ApstraClient("", USER, PASSWORD)
    with pytest.raises(ValueError):
        ApstraClient("http://x", "", PASSWORD)
    with pytest.raises(ValueError):
        ApstraClient("http://x", USER, "")


def test_login_then_logout(client, apstra_server):
    _, state = apstra_server
    client.login()
    assert client.logged_in
    assert client.id == "user-1"
    assert client.session.headers[AUTH_HEADER] == "TKN-1"

    client.logout()
    assert not client.logged_in
    assert state["calls"]["logout"] == 1


def test_bad_credentials_raise_auth_error(apstra_server):
    base_url, _ = apstra_server
    c = ApstraClient(base_url, USER, "wrong", timeout_sec=2)
    try:
        with pytest.raises(ApstraAuthError) as ei:
            c.login()
        assert ei.value.status == 401
        assert "check username/password" in str(ei.value)
        assert "wrong" not in str(ei.value)
    finally:
        c.close()


def test_401_triggers_single_login_and_resend(client, apstra_server):
    _, state = apstra_server
    assert client.get_api_version() == "4.2.0"
    assert state["calls"]["login"] == 1
    assert state["calls"]["version"] == 1

    # cached
    assert client.get_api_version() == "4.2.0"
    assert state["calls"]["version"] == 1


def test_expired_token_is_renewed(client, apstra_server):
    _, state = apstra_server
    client.login()
    state["token"] = "TKN-2"
    assert client.list_blueprint_ids() == ["bp-1", "bp-2"]
    assert client.session.headers[AUTH_HEADER] == "TKN-2"
    assert state["calls"]["login"] == 2


def test_401_after_relogin_is_fatal(client, apstra_server):
    _, state = apstra_server
    client.login()
    state["reject_all"] = True
    with pytest.raises(ApstraAuthError):
        client.list_blueprint_ids()
    assert state["calls"]["login"] == 2


def test_non_2xx_raises_http_error(client):
    with pytest.raises(ApstraHttpError) as ei:
        client.get_json("/broken")
    assert ei.value.status == 500
    assert "boom" in ei.value.body


def test_non_json_success_raises_protocol_error(client):
    with pytest.raises(ApstraProtocolError):
        client.get_json("/notjson")


def test_connection_error_has_status_zero():
    c = ApstraClient("http://127.0.0.1:9", USER, PASSWORD, timeout_sec=0.5)
    try:
        with pytest.raises(ApstraHttpError) as ei:
            c.get_json("/api/versions/api")
        assert ei.value.status == 0
    finally:
        c.close()


def test_blueprint_id_from_url():
    assert blueprint_id_from_url("/api/blueprints/bp-1/security-zones") == "bp-1"
    assert blueprint_id_from_url("https://a.b/api/blueprints/bp-9/tasks/x?async=full") == "bp-9"
    assert blueprint_id_from_url("/api/design/tags") == ""


def test_get_blueprint_tasks_status_sends_filter(client, apstra_server):
    _, state = apstra_server
    state["tasks"]["bp-1"] = {"abc": ["in_progress"], "def": ["succeeded"]}
    result = client.get_blueprint_tasks_status("bp-1", ["abc", "def"])
    assert result == {"abc": "in_progress", "def": "succeeded"}
    assert state["filters"][-1] == "id in ['abc','def']"


def test_get_blueprint_tasks_status_rejects_empty_status(client, apstra_server):
    _, state = apstra_server
    state["tasks"]["bp-1"] = {"abc": [""]}
    with pytest.raises(ApstraProtocolError, match="empty task status"):
        client.get_blueprint_tasks_status("bp-1", ["abc"])


def test_get_blueprint_task_status_by_id(client, apstra_server):
    _, state = apstra_server
    state["tasks"]["bp-1"] = {"abc": ["succeeded"]}
    record = client.get_blueprint_task_status_by_id("bp-1", "abc")
    assert record.id == "abc"
    assert record.status == "succeeded"
    assert record.detailed_status.api_response == {"id": "sz-1"}
    assert record.detailed_status.config_blueprint_version == 3


def test_wait_for_task_completion_through_monitor(client, apstra_server):
    _, state = apstra_server
    state["tasks"]["bp-2"] = {"t1": ["init", "in_progress", "succeeded"]}
    record = client.wait_for_task_completion("bp-2", "t1")
    assert record.status == "succeeded"
    assert state["calls"]["task_list"] >= 3
    assert state["calls"]["task_detail"] == 1


def test_wait_for_unknown_task(client):
    with pytest.raises(TaskUnknownError, match="unknown to Apstra server"):
        client.wait_for_task_completion("bp-1", "ghost")


def test_async_request_returns_api_response(client, apstra_server):
    _, state = apstra_server
    out = client.blueprint_request("POST", "bp-1", "security-zones", {"label": "blue"})
    assert out == {"id": "sz-1"}
    assert state["filters"][-1] == "id in ['t-sz']"
    assert state["calls"]["task_detail"] == 1


def test_async_request_failed_task_raises(client, apstra_server):
    _, state = apstra_server
    state["tasks"]["bp-1"] = {"t-sz": ["failed"]}
    state["task_details"]["t-sz"] = {"api_response": None, "errors": {"label": "duplicate"}, "error_code": 422}
    with pytest.raises(ApstraTaskFailedError) as ei:
        client.blueprint_request("POST", "bp-1", "security-zones", {"label": "blue"})
    assert ei.value.record is not None
    assert ei.value.record.status == "failed"
    assert "duplicate" in str(ei.value)


def test_blueprints(client, apstra_server):
    _, state = apstra_server
    assert client.list_blueprint_ids() == ["bp-1", "bp-2"]
    assert client.get_blueprint("bp-2")["label"] == "BP-2"
    client.delete_blueprint("bp-1", poll_sec=0.01)
    assert state["blueprints"] == ["bp-2"]


def test_tag_crud(client):
    assert client.list_tag_ids() == ["tag-1"]
    assert client.get_tag_by_label("leaf")["id"] == "tag-1"
    with pytest.raises(ApstraNotFoundError):
        client.get_tag_by_label("LEAF")

    new_id = client.create_tag("spine", "spine switches")
    assert client.get_tag(new_id)["label"] == "spine"

    client.update_tag(new_id, "spine", "updated")
    assert client.get_tag(new_id)["description"] == "updated"

    client.delete_tag(new_id)
    assert client.list_tag_ids() == ["tag-1"]


def test_close_logs_out_and_stops_monitor(apstra_server):
    base_url, state = apstra_server
    with ApstraClient(base_url, USER, PASSWORD, timeout_sec=2, monitor_options=FAST) as c:
        state["tasks"]["bp-1"] = {"t1": ["succeeded"]}
        c.wait_for_task_completion("bp-1", "t1")
        assert c.task_monitor.running
    assert state["calls"]["logout"] == 1
    assert not c.task_monitor.running
