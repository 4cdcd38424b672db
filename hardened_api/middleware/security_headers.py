# hardened_api/middleware/security_headers.py
# Summary: Fixed hardened response-header set.
# - headers_for(): pure function from HeaderPolicy + environment to an ordered mapping.
# - COEP only in production so dev tooling can still load third-party resources.
# - strip_identifying_headers(): removes Server / X-Powered-By from any response.

from __future__ import annotations

from typing import Dict, List, Mapping, MutableMapping, Sequence

from hardened_api.config import Environment, HeaderPolicy

IDENTIFYING_HEADERS = ("server", "x-powered-by")


def build_csp(directives: Mapping[str, Sequence[str]]) -> str:
    parts: List[str] = []
    for name, tokens in directives.items():
        name = name.strip()
        if not name:
            continue
        sources = " ".join(t for t in tokens if t)
        parts.append(f"{name} {sources}" if sources else name)
    return ";".join(parts)


def build_hsts(policy: HeaderPolicy) -> str:
    clauses = [f"max-age={policy.hsts_max_age}"]
    if policy.hsts_include_subdomains:
        clauses.append("includeSubDomains")
    if policy.hsts_preload:
        clauses.append("preload")
    return "; ".join(clauses)


def headers_for(policy: HeaderPolicy, environment: Environment) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "Content-Security-Policy": build_csp(policy.csp_directives),
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
    }
    if environment is Environment.PRODUCTION and policy.cross_origin_embedder_policy:
        headers["Cross-Origin-Embedder-Policy"] = "require-corp"
    headers.update(
        {
            "Origin-Agent-Cluster": "?1",
            "Referrer-Policy": policy.referrer_policy,
            "Strict-Transport-Security": build_hsts(policy),
            "X-Content-Type-Options": "nosniff",
            "X-DNS-Prefetch-Control": "off",
            "X-Download-Options": "noopen",
            "X-Frame-Options": policy.frame_option.value.upper(),
            "X-Permitted-Cross-Domain-Policies": "none",
        }
    )
    return headers


def strip_identifying_headers(headers: MutableMapping[str, str]) -> None:
    for name in IDENTIFYING_HEADERS:
        while name in headers:
            del headers[name]


_CATALOGUE = (
    ("Content-Security-Policy", "Restricts which sources scripts, styles and media may load from"),
    ("Cross-Origin-Opener-Policy", "Isolates the browsing context from cross-origin windows"),
    ("Cross-Origin-Resource-Policy", "Prevents other origins from reading responses"),
    ("Cross-Origin-Embedder-Policy", "Blocks cross-origin resources without explicit grant (production)"),
    ("Origin-Agent-Cluster", "Requests an origin-keyed agent cluster"),
    ("Referrer-Policy", "Limits referrer information sent with requests"),
    ("Strict-Transport-Security", "Forces encrypted transport for future connections"),
    ("X-Content-Type-Options", "Disables MIME sniffing"),
    ("X-DNS-Prefetch-Control", "Disables DNS prefetching"),
    ("X-Download-Options", "Prevents legacy IE from opening downloads in site context"),
    ("X-Frame-Options", "Prevents clickjacking via framing"),
    ("X-Permitted-Cross-Domain-Policies", "Denies Flash/PDF cross-domain policy files"),
)


def describe_headers(policy: HeaderPolicy, environment: Environment) -> List[Dict[str, str]]:
    """Catalogue of hardened headers with the value this policy emits."""
    values = headers_for(policy, environment)
    return [
        {"name": name, "purpose": purpose, "value": values.get(name, "")}
        for name, purpose in _CATALOGUE
        if name in values
    ]


__all__ = [
    "IDENTIFYING_HEADERS",
    "build_csp",
    "build_hsts",
    "describe_headers",
    "headers_for",
    "strip_identifying_headers",
]
