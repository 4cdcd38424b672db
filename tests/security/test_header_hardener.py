from __future__ import annotations

import dataclasses

import pytest
from starlette.datastructures import MutableHeaders
from starlette.responses import PlainTextResponse

from hardened_api.config import Environment, HeaderPolicy, RateLimitPolicy, resolve
from hardened_api.middleware.security_headers import (
    build_csp,
    build_hsts,
    describe_headers,
    headers_for,
    strip_identifying_headers,
)

DEFAULT_CSP = (
    "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
    "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
    "object-src 'none';script-src 'self';script-src-attr 'none';"
    "style-src 'self' 'unsafe-inline';upgrade-insecure-requests"
)

EXPECTED_DEV = {
    "Content-Security-Policy": DEFAULT_CSP,
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
}


def test_development_header_set() -> None:
    p = resolve({})
    assert headers_for(p.headers, p.environment) == EXPECTED_DEV


def test_production_adds_coep() -> None:
    p = resolve({"APP_ENV": "production"})
    h = headers_for(p.headers, p.environment)
    assert h["Cross-Origin-Embedder-Policy"] == "require-corp"
    assert {k: v for k, v in h.items() if k != "Cross-Origin-Embedder-Policy"} == EXPECTED_DEV


def test_headers_are_ordered_with_csp_first() -> None:
    p = resolve({})
    assert list(headers_for(p.headers, p.environment))[0] == "Content-Security-Policy"


@pytest.mark.parametrize(
    "sub,preload,expected",
    [
        (True, True, "max-age=31536000; includeSubDomains; preload"),
        (True, False, "max-age=31536000; includeSubDomains"),
        (False, True, "max-age=31536000; preload"),
        (False, False, "max-age=31536000"),
    ],
)
def test_hsts_only_lists_true_clauses(sub, preload, expected) -> None:
    policy = HeaderPolicy(hsts_include_subdomains=sub, hsts_preload=preload)
    assert build_hsts(policy) == expected


def test_build_csp() -> None:
    assert build_csp({"default-src": ("'self'",), "upgrade-insecure-requests": ()}) == (
        "default-src 'self';upgrade-insecure-requests"
    )
    assert build_csp({" ": ("x",)}) == ""


def test_strip_identifying_headers() -> None:
    response = PlainTextResponse("x", headers={"Server": "uvicorn", "X-Powered-By": "Starlette"})
    headers = MutableHeaders(raw=response.raw_headers)
    strip_identifying_headers(headers)
    assert "server" not in headers
    assert "x-powered-by" not in headers
    assert headers["content-type"].startswith("text/plain")


def test_catalogue_matches_emitted_values() -> None:
    p = resolve({})
    catalogue = describe_headers(p.headers, p.environment)
    assert [c["name"] for c in catalogue] == list(EXPECTED_DEV)
    assert all(c["value"] == EXPECTED_DEV[c["name"]] for c in catalogue)


# ------------------------------ every response --------------------------------


def _assert_hardened(response, environment: Environment = Environment.DEVELOPMENT) -> None:
    for name, value in EXPECTED_DEV.items():
        assert response.headers.get(name) == value, name
    if environment is Environment.PRODUCTION:
        assert response.headers["cross-origin-embedder-policy"] == "require-corp"
    else:
        assert "cross-origin-embedder-policy" not in response.headers
    assert "server" not in response.headers
    assert "x-powered-by" not in response.headers


def test_headers_on_success_and_not_found(client) -> None:
    _assert_hardened(client.get("/"))
    r = client.get("/missing")
    assert r.status_code == 404
    _assert_hardened(r)


def test_headers_on_validation_and_size_rejections(make_client) -> None:
    client = make_client(max_body_bytes=64)
    r = client.post("/greet", json={})
    assert r.status_code == 400
    _assert_hardened(r)
    r = client.post("/greet", content=b"x" * 200, headers={"Content-Type": "application/json"})
    assert r.status_code == 413
    _assert_hardened(r)


def test_headers_on_throttle_rejection(make_client) -> None:
    client = make_client(rate_limit=RateLimitPolicy(window_ms=1000, max_requests=1))
    client.get("/")
    r = client.get("/")
    assert r.status_code == 429
    _assert_hardened(r)


def test_headers_on_preflight(make_client) -> None:
    r = make_client().options(
        "/", headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"}
    )
    assert r.status_code == 204
    _assert_hardened(r)


def test_headers_on_unhandled_error_in_production(make_client) -> None:
    p = resolve({"APP_ENV": "production"})
    client = make_client(p)

    @client.app.get("/boom")
    async def boom():
        raise RuntimeError("kaput")

    r = client.get("/boom")
    assert r.status_code == 500
    _assert_hardened(r, Environment.PRODUCTION)


def test_identifying_headers_set_by_a_handler_are_removed(client) -> None:
    @client.app.get("/leaky")
    async def leaky():
        return PlainTextResponse("x", headers={"X-Powered-By": "Express", "Server": "nginx"})

    _assert_hardened(client.get("/leaky"))


def test_frame_option_from_policy(make_client) -> None:
    base = resolve({"FRAME_OPTIONS": "deny"})
    r = make_client(base).get("/")
    assert r.headers["x-frame-options"] == "DENY"


def test_policy_header_overrides_route_header(client) -> None:
    @client.app.get("/weak")
    async def weak():
        return PlainTextResponse("x", headers={"X-Frame-Options": "ALLOWALL"})

    assert client.get("/weak").headers["x-frame-options"] == "SAMEORIGIN"


def test_rate_limit_and_request_id_headers_present(client) -> None:
    r = client.get("/")
    assert "ratelimit" in r.headers and "ratelimit-policy" in r.headers
    assert r.headers["x-request-id"]


def test_policy_is_not_mutated_per_request(make_client) -> None:
    p = resolve({})
    snapshot = dataclasses.asdict(p)
    client = make_client(p)
    client.get("/")
    client.get("/missing")
    assert dataclasses.asdict(p) == snapshot
