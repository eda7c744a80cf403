"""Tests for remote outcome classification."""

from __future__ import annotations

import json

import httpx
import pytest

from fitguard.models.enums import RemoteStatus
from fitguard.services.remote_auth import RemoteAuthClient
from tests.conftest import make_remote

GOOD_BODY = {"token": "jwt", "user": {"id": "u-1", "email": "a@x.com", "username": "Al"}}


def respond(status: int, **kwargs):
    return lambda request: httpx.Response(status, **kwargs)


class TestClassification:
    @pytest.mark.parametrize("status", [200, 201])
    def test_accepted(self, logger, status) -> None:
        client = make_remote(logger, respond(status, json=GOOD_BODY))
        outcome = client.login("a@x.com", "pw")
        assert outcome.status == RemoteStatus.ACCEPTED
        assert outcome.accepted is True
        assert outcome.payload.token == "jwt"
        assert outcome.payload.user.username == "Al"

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    def test_client_errors_are_rejections(self, logger, status) -> None:
        client = make_remote(logger, respond(status, json={"message": "nope"}))
        outcome = client.login("a@x.com", "pw")
        assert outcome.status == RemoteStatus.REJECTED
        assert outcome.status_code == status
        assert outcome.reason == "nope"
        assert outcome.accepted is False

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_server_errors_are_unavailable(self, logger, status) -> None:
        outcome = make_remote(logger, respond(status)).login("a@x.com", "pw")
        assert outcome.status == RemoteStatus.UNAVAILABLE
        assert outcome.reason == "server_error"
        assert outcome.status_code == status

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"content": b"<html>oops</html>"},
            {"json": {"token": "jwt"}},
            {"json": {"user": {"id": "u-1", "email": "a@x.com"}}},
            {"json": ["token", "user"]},
        ],
    )
    def test_malformed_success_is_unavailable(self, logger, kwargs) -> None:
        outcome = make_remote(logger, respond(200, **kwargs)).login("a@x.com", "pw")
        assert outcome.status == RemoteStatus.UNAVAILABLE
        assert outcome.reason == "malformed_body"

    @pytest.mark.parametrize(
        "error,reason",
        [
            (httpx.ReadTimeout, "timeout"),
            (httpx.ConnectTimeout, "timeout"),
            (httpx.ConnectError, "network_error"),
        ],
    )
    def test_transport_failures_are_unavailable(self, logger, error, reason) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise error("boom", request=request)

        outcome = make_remote(logger, handler).login("a@x.com", "pw")
        assert outcome.status == RemoteStatus.UNAVAILABLE
        assert outcome.reason == reason


class TestConfiguration:
    def test_disabled_client_does_no_io(self, logger) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=GOOD_BODY)

        client = RemoteAuthClient(
            base_url="https://auth.test/api",
            timeout=1.0,
            enabled=False,
            logger=logger,
            transport=httpx.MockTransport(handler),
        )
        outcome = client.login("a@x.com", "pw")
        assert outcome.reason == "disabled"
        assert calls == []

    def test_empty_url_disables(self, logger) -> None:
        client = RemoteAuthClient(base_url="", timeout=1.0, enabled=True, logger=logger)
        assert client.enabled is False
        assert client.register("Al", "a@x.com", "pw").status == RemoteStatus.UNAVAILABLE

    def test_request_shape(self, logger) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json=GOOD_BODY)

        client = make_remote(logger, handler)
        client.register("Al", "a@x.com", "pw")
        client.close()
        client.close()

        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == "https://auth.test/api/auth/register"
        assert json.loads(request.content) == {
            "username": "Al", "email": "a@x.com", "password": "pw",
        }
