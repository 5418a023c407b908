"""Unit tests for upstream URL and header rewriting."""

from keyrelay.services.forwarder import build_upstream_headers, build_upstream_url


def test_url_concatenates_base_path_and_query() -> None:
    url = build_upstream_url("https://api.example.com/v1", "/chat/completions", "stream=true")

    assert url == "https://api.example.com/v1/chat/completions?stream=true"


def test_url_without_query() -> None:
    assert build_upstream_url("https://api.example.com", "/models") == "https://api.example.com/models"


def test_url_keeps_encoding_verbatim() -> None:
    url = build_upstream_url("https://api.example.com", "/files/a%2Fb", "q=a%20b&x=%7E")

    assert url == "https://api.example.com/files/a%2Fb?q=a%20b&x=%7E"


def test_headers_swap_authorization() -> None:
    headers = build_upstream_headers(
        [("authorization", "Bearer caller-token"), ("content-type", "application/json")],
        "sk-upstream",
    )

    assert ("authorization", "Bearer sk-upstream") in headers
    assert all(value != "Bearer caller-token" for _, value in headers)
    assert [v for k, v in headers if k.lower() == "authorization"] == ["Bearer sk-upstream"]


def test_headers_strip_proxy_identifying_headers() -> None:
    inbound = [
        ("host", "proxy.local"),
        ("X-Forwarded-For", "10.0.0.1"),
        ("x-forwarded-host", "proxy.local"),
        ("x-forwarded-proto", "https"),
        ("x-forwarded-server", "edge"),
        ("X-Real-IP", "10.0.0.1"),
        ("x-scheme", "https"),
        ("accept", "application/json"),
    ]

    names = [name.lower() for name, _ in build_upstream_headers(inbound, "sk")]

    assert names == ["accept", "authorization"]


def test_headers_preserve_repeats_and_order() -> None:
    inbound = [("x-tag", "one"), ("accept", "*/*"), ("x-tag", "two")]

    headers = build_upstream_headers(inbound, "sk")

    assert headers[:3] == inbound
