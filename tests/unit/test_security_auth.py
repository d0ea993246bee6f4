from __future__ import annotations

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from apps.api_gateway.deps import service_auth_dep
from offchain_agent.common.errors import UnauthorizedError
from offchain_agent.common.security import (
    body_digest,
    require_api_key,
    sign_push_body,
    verify_push_signature,
)

jwt = pytest.importorskip("jwt")


def _make_request(path: str = "/v1/media/jobs") -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }
    return Request(scope)


def test_no_keys_in_dev_allows_anonymous(settings) -> None:
    settings.service_api_keys = ""
    assert require_api_key(None).auth_type == "none"


def test_no_keys_in_prod_is_rejected(settings) -> None:
    settings.app_env = "prod"
    settings.service_api_keys = ""
    with pytest.raises(UnauthorizedError):
        require_api_key("anything")


def test_service_dep_checks_key(settings) -> None:
    settings.service_api_keys = "svc-1,svc-2"
    ctx = service_auth_dep(request=_make_request(), x_api_key="svc-2")
    assert ctx.auth_type == "api_key"

    with pytest.raises(HTTPException) as e:
        service_auth_dep(request=_make_request(), x_api_key="wrong")
    assert e.value.status_code == 401

    with pytest.raises(HTTPException):
        service_auth_dep(request=_make_request(), x_api_key=None)


def test_push_signature_roundtrip() -> None:
    body = b'{"job_id": "x"}'
    token = sign_push_body(body, key="k", issuer="Upstash", url="https://agent.local/v1/push/q")
    claims = verify_push_signature(body, token, key="k", issuer="Upstash")
    assert claims["body"] == body_digest(body)
    assert claims["sub"] == "https://agent.local/v1/push/q"


def test_push_signature_rejects_tampered_body_wrong_key_and_issuer() -> None:
    body = b"payload"
    token = sign_push_body(body, key="k", issuer="Upstash")
    with pytest.raises(UnauthorizedError):
        verify_push_signature(b"payload2", token, key="k", issuer="Upstash")
    with pytest.raises(UnauthorizedError):
        verify_push_signature(body, token, key="other", issuer="Upstash")
    with pytest.raises(UnauthorizedError):
        verify_push_signature(body, token, key="k", issuer="someone-else")
    with pytest.raises(UnauthorizedError):
        verify_push_signature(body, token, key=None, issuer="Upstash")


def test_push_signature_rejects_expired_token() -> None:
    body = b"payload"
    token = sign_push_body(body, key="k", issuer="Upstash", ttl_sec=-60)
    with pytest.raises(UnauthorizedError):
        verify_push_signature(body, token, key="k", issuer="Upstash")
