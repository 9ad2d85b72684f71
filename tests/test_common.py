from unittest import mock

import pytest
import requests

import osr_common
from osr_common import (
    ERRORS,
    FLAVORS_PATH,
    SERVERS_PATH,
    TOKENS_PATH,
    VOLUMES_PATH,
    FetchResult,
    build_auth_payload,
    get_flavors,
    get_project_token,
    get_projects,
    get_servers,
    get_volumes,
    log_error,
    new_session,
    reset_errors,
)
from fakes import FakeCloud, FakeResponse, FakeSession

BASE = "https://cloud.example.com"


@pytest.fixture(autouse=True)
def clean_errors():
    reset_errors()
    yield
    reset_errors()


class TestToken:
    def test_token_from_subject_header(self):
        cloud = FakeCloud(BASE)
        token = get_project_token(FakeSession(cloud), BASE, "acme", "u", "pw", "web")
        assert token == "tok-web"
        assert cloud.requests == [("POST", BASE + TOKENS_PATH)]
        assert ERRORS == []

    def test_payload_scopes_project_in_domain(self):
        payload = build_auth_payload("acme", "u", "pw", "web")
        auth = payload["auth"]
        assert auth["identity"]["methods"] == ["password"]
        assert auth["identity"]["password"]["user"] == {
            "name": "u", "domain": {"name": "acme"}, "password": "pw",
        }
        assert auth["scope"]["project"] == {"name": "web", "domain": {"name": "acme"}}

    def test_trailing_slash_in_endpoint(self):
        session = mock.Mock()
        session.post.return_value = FakeResponse(201, {}, headers={"X-Subject-Token": "t"})
        get_project_token(session, BASE + "/", "acme", "u", "pw", "web", timeout=5)
        args, kwargs = session.post.call_args
        assert args[0] == BASE + TOKENS_PATH
        assert kwargs["timeout"] == 5

    def test_rejected_credentials(self):
        cloud = FakeCloud(BASE, fail={"auth:web"})
        assert get_project_token(FakeSession(cloud), BASE, "acme", "u", "pw", "web") is None
        assert len(ERRORS) == 1
        assert ERRORS[0]["area"] == "keystone"
        assert "401" in ERRORS[0]["msg"]

    def test_missing_subject_header(self):
        session = mock.Mock()
        session.post.return_value = FakeResponse(201, {"token": {}})
        assert get_project_token(session, BASE, "acme", "u", "pw", "web") is None
        assert "X-Subject-Token" in ERRORS[0]["msg"]

    def test_transport_error(self):
        session = mock.Mock()
        session.post.side_effect = requests.ConnectionError("refused")
        assert get_project_token(session, BASE, "acme", "u", "pw", "web") is None
        assert "refused" in ERRORS[0]["msg"]


class TestListings:
    def test_servers_ok(self):
        cloud = FakeCloud(BASE, servers={"web": [{"id": "s1"}, {"id": "s2"}]})
        result = get_servers(FakeSession(cloud), BASE, "tok-web")
        assert result.status == "ok"
        assert [s["id"] for s in result.items] == ["s1", "s2"]
        assert cloud.requests == [("GET", BASE + SERVERS_PATH)]

    def test_empty_listing_is_not_an_error(self):
        cloud = FakeCloud(BASE)
        result = get_volumes(FakeSession(cloud), BASE, "tok-web")
        assert result.status == "empty"
        assert result.ok
        assert result.items == []
        assert ERRORS == []

    def test_http_error_is_returned_not_raised(self):
        cloud = FakeCloud(BASE, fail={"flavors"})
        result = get_flavors(FakeSession(cloud), BASE, "tok-web")
        assert result.status == "error"
        assert not result.ok
        assert "500" in result.error
        assert ERRORS[0]["area"] == "nova"

    def test_volumes_failure_area(self):
        cloud = FakeCloud(BASE, fail={"volumes:web"})
        result = get_volumes(FakeSession(cloud), BASE, "tok-web")
        assert not result.ok
        assert ERRORS[0]["area"] == "cinder"

    def test_timeout(self):
        session = mock.Mock()
        session.get.side_effect = requests.Timeout("read timed out")
        result = get_volumes(session, BASE, "t", timeout=3)
        assert not result.ok
        assert "Timed out after 3s" in result.error

    def test_undecodable_body(self):
        session = mock.Mock()
        session.get.return_value = FakeResponse(200, text="<html>")
        result = get_servers(session, BASE, "t")
        assert not result.ok
        assert "Invalid JSON" in result.error

    def test_missing_key(self):
        session = mock.Mock()
        session.get.return_value = FakeResponse(200, {"other": []})
        result = get_servers(session, BASE, "t")
        assert not result.ok
        assert "'servers'" in result.error

    def test_auth_header_and_timeout_sent(self):
        session = mock.Mock()
        session.get.return_value = FakeResponse(200, {"flavors": []})
        get_flavors(session, BASE, "secret-token", timeout=7)
        session.get.assert_called_once_with(
            BASE + FLAVORS_PATH, headers={"X-Auth-Token": "secret-token"}, timeout=7,
        )

    def test_projects_listing(self):
        cloud = FakeCloud(BASE, projects=["web", "db"])
        result = get_projects(FakeSession(cloud), BASE, "tok-admin")
        assert [p["name"] for p in result.items] == ["web", "db"]


class TestPagination:
    def test_follows_marker_until_short_page(self):
        pages = [
            FakeResponse(200, {"volumes": [{"id": "v1"}, {"id": "v2"}]}),
            FakeResponse(200, {"volumes": [{"id": "v3"}]}),
        ]
        session = mock.Mock()
        session.get.side_effect = pages
        result = get_volumes(session, BASE, "t", page_limit=2)
        assert [v["id"] for v in result.items] == ["v1", "v2", "v3"]
        first, second = session.get.call_args_list
        assert first.kwargs["params"] == {"limit": 2}
        assert second.kwargs["params"] == {"limit": 2, "marker": "v2"}
        assert first.args[0] == BASE + VOLUMES_PATH

    def test_failed_page_fails_listing(self):
        session = mock.Mock()
        session.get.side_effect = [
            FakeResponse(200, {"servers": [{"id": "s1"}]}),
            FakeResponse(503, text="busy"),
        ]
        result = get_servers(session, BASE, "t", page_limit=1)
        assert not result.ok
        assert "503" in result.error
        assert len(ERRORS) == 1


def test_session_retry_policy():
    session = new_session(verify_tls=False, retries=4)
    retry = session.get_adapter(BASE).max_retries
    assert session.verify is False
    assert retry.total == 4
    assert 503 in retry.status_forcelist
    assert "POST" not in retry.allowed_methods


def test_fetch_result_states():
    assert FetchResult.from_items([{"id": 1}]).status == "ok"
    assert FetchResult.from_items([]).status == "empty"
    failed = FetchResult.failed("boom")
    assert (failed.status, failed.items, failed.error, failed.ok) == ("error", [], "boom", False)


def test_error_ledger_entries():
    log_error("nova", "something broke")
    entry = osr_common.ERRORS[-1]
    assert entry["area"] == "nova"
    assert entry["msg"] == "something broke"
    assert entry["time_utc"].endswith("Z")
