"""Tests for the CRM and CMS HTTP clients with a mocked requests session."""

import time
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
import requests
import structlog

from jobsync.clients.mysolution_client import CHANGED_SINCE_PARAMS, MysolutionClient
from jobsync.clients.webflow_client import PAGE_SIZE, WebflowClient, normalize_name
from jobsync.errors import (
    NotFoundError,
    SourceError,
    TargetError,
    TargetValidationError,
    TransientNetworkError,
)
from jobsync.sync.gateway import RateLimitedGateway

log = structlog.stdlib.get_logger()


def _response(status: int = 200, body=None, headers: dict | None = None) -> Mock:
    response = Mock(spec=requests.Response)
    response.status_code = status
    response.ok = status < 400
    response.headers = headers or {}
    response.content = b"{}" if body is not None else b""
    response.json.return_value = body
    response.text = str(body)
    return response


def _job(job_id: str, **fields) -> dict:
    return {
        "Id": job_id,
        "Name": f"Job {job_id}",
        "msf__Status__c": "Online",
        "msf__Show_On_Website__c": True,
        "LastModifiedDate": "2024-05-01T10:00:00.000+0000",
        **fields,
    }


def _mysolution(session: Mock) -> MysolutionClient:
    return MysolutionClient(
        base_url="https://crm.example.com/",
        token_provider=lambda: "crm-token",
        retry_attempts=3,
        retry_delay_seconds=0,
        session=session,
    )


def _webflow(session: Mock, **kwargs) -> WebflowClient:
    gateway = RateLimitedGateway(capacity=1000, sleep=lambda s: None)
    return WebflowClient(
        api_url="https://api.webflow.com/v2",
        api_token="webflow-token",
        site_id="site-1",
        jobs_collection_id="jobs-1",
        gateway=gateway,
        retry_attempts=3,
        retry_delay_seconds=0,
        session=session,
        **kwargs,
    )


class TestMysolutionClient:
    def test_fetch_all_converts_and_skips_invalid(self):
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(body=[_job("a1"), {"Name": "no id"}, _job("a2")])

        records = _mysolution(session).fetch_all()

        assert [r.id for r in records] == ["a1", "a2"]
        url = session.get.call_args.args[0]
        assert url == "https://crm.example.com/services/apexrest/msf/api/job/Get"
        headers = session.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer crm-token"

    def test_fetch_changed_since_sends_filter_params(self):
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(body=[_job("a1")])

        _mysolution(session).fetch_changed_since(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))

        params = session.get.call_args.kwargs["params"]
        assert set(params) == set(CHANGED_SINCE_PARAMS)
        assert all(v == "2024-05-01T09:00:00Z" for v in params.values())

    def test_timeouts_are_retried_then_reported(self):
        session = Mock(spec=requests.Session)
        session.get.side_effect = requests.exceptions.Timeout("read timed out")

        with pytest.raises(SourceError):
            _mysolution(session).fetch_all()

        assert session.get.call_count == 3

    def test_transient_failure_recovers(self):
        session = Mock(spec=requests.Session)
        session.get.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            _response(body=[_job("a1")]),
        ]

        assert [r.id for r in _mysolution(session).fetch_all()] == ["a1"]

    def test_client_errors_are_not_retried(self):
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(status=401, body={"error": "expired"})

        with pytest.raises(SourceError):
            _mysolution(session).fetch_all()

        assert session.get.call_count == 1

    def test_fetch_by_id(self):
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(body=[_job("a1"), _job("a2")])
        client = _mysolution(session)

        assert client.fetch_by_id("a2").id == "a2"
        with pytest.raises(NotFoundError):
            client.fetch_by_id("zz")


class TestWebflowClient:
    def test_fetch_all_mirrored_paginates(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        first = [
            {"id": f"i{n}", "isArchived": False, "fieldData": {"mysolution-id": f"a{n}"}}
            for n in range(PAGE_SIZE)
        ]
        second = [{"id": "last", "isArchived": True, "fieldData": {"mysolution-id": "z"}}]
        session.request.side_effect = [
            _response(body={"items": first, "pagination": {"total": PAGE_SIZE + 1}}),
            _response(body={"items": second, "pagination": {"total": PAGE_SIZE + 1}}),
        ]

        records = _webflow(session).fetch_all_mirrored()

        assert len(records) == PAGE_SIZE + 1
        assert records[-1].archived is True
        assert records[-1].source_id == "z"
        offsets = [c.kwargs["params"]["offset"] for c in session.request.call_args_list]
        assert offsets == [0, PAGE_SIZE]
        assert session.headers["Authorization"] == "Bearer webflow-token"

    def test_create_and_update_payloads(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.side_effect = [
            _response(body={"id": "new-1"}),
            _response(body={"id": "old-1"}),
        ]
        client = _webflow(session)

        created = client.upsert("a1", {"name": "Job"})
        updated = client.upsert("a1", {"name": "Job"}, target_id="old-1")

        assert (created.id, created.action) == ("new-1", "created")
        assert (updated.id, updated.action) == ("old-1", "updated")
        create_call, update_call = session.request.call_args_list
        assert create_call.args[0] == "POST"
        assert update_call.args[0] == "PATCH"
        assert update_call.kwargs["json"]["isArchived"] is False

    def test_archive_is_a_soft_delete(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.return_value = _response(body={"id": "i1"})

        _webflow(session).archive("i1")

        method, url = session.request.call_args.args
        assert method == "PATCH"
        assert url.endswith("/collections/jobs-1/items/i1")
        assert session.request.call_args.kwargs["json"] == {"isArchived": True}

    @pytest.mark.parametrize(
        "status,error",
        [
            (404, NotFoundError),
            (400, TargetValidationError),
            (422, TargetValidationError),
            (401, TargetError),
            (403, TargetError),
        ],
    )
    def test_status_mapping(self, status: int, error: type):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.return_value = _response(status=status, body={"message": "nope"})

        with pytest.raises(error):
            _webflow(session).upsert("a1", {"name": "Job"}, target_id="i1")

        assert session.request.call_count == 1

    def test_validation_error_carries_detail(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.return_value = _response(
            status=400, body={"message": "Validation Error", "details": ["slug taken"]}
        )

        with pytest.raises(TargetValidationError) as exc_info:
            _webflow(session).upsert("a1", {"name": "Job"})

        assert exc_info.value.detail["details"] == ["slug taken"]

    def test_rate_limit_is_absorbed(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        reset = str(int(time.time()) + 1)
        session.request.side_effect = [
            _response(status=429, body={}, headers={"x-ratelimit-reset": reset}),
            _response(body={"id": "i1"}, headers={"x-ratelimit-remaining": "55"}),
        ]

        result = _webflow(session).upsert("a1", {"name": "Job"}, target_id="i1")

        assert result.id == "i1"
        assert session.request.call_count == 2

    def test_timeouts_are_retried(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(TransientNetworkError):
            _webflow(session).archive("i1")

        assert session.request.call_count == 3

    def test_publish_targets_site(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.return_value = _response(body={})

        result = _webflow(session).publish("sync finished")

        method, url = session.request.call_args.args
        assert method == "POST"
        assert url.endswith("/sites/site-1/publish")
        assert result.reason == "sync finished"

    def test_sector_lookup_is_cached_and_normalized(self):
        session = Mock(spec=requests.Session)
        session.headers = {}
        session.request.return_value = _response(
            body={
                "items": [
                    {"id": "s1", "fieldData": {"name": "Life  Sciences"}},
                    {"id": "s2", "fieldData": {"name": "Finance"}},
                ]
            }
        )
        client = _webflow(session, sectors_collection_id="sectors-1")

        assert client.resolve_reference("sectors", "life sciences") == "s1"
        assert client.resolve_reference("sectors", " FINANCE ") == "s2"
        assert client.resolve_reference("sectors", "Unknown") is None
        assert session.request.call_count == 1

    def test_sector_lookup_without_collection(self):
        session = Mock(spec=requests.Session)
        session.headers = {}

        assert _webflow(session).resolve_reference("sectors", "Finance") is None
        session.request.assert_not_called()


def test_normalize_name():
    assert normalize_name("  Life\tSciences ") == "life sciences"
