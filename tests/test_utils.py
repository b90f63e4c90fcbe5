import pytest

from utils import (
    absolutize_url,
    decode_body,
    format_duration,
    parse_content_type,
    sanitize_url,
    truncate_string,
    url_host,
    validate_url,
)


@pytest.mark.parametrize("url,expected", [
    ("https://example.com/page", True),
    ("  http://sub.example.org  ", True),
    ("ftp://example.com/file", False),
    ("https://localhost/", False),
    ("not a url", False),
    ("", False),
    (None, False),
])
def test_validate_url(url, expected):
    assert validate_url(url) is expected


def test_url_host():
    assert url_host("https://WWW.Example.com:8080/path") == "www.example.com"
    assert url_host("") == ""


@pytest.mark.parametrize("url,expected", [
    ("HTTPS://Example.COM", "https://example.com/"),
    ("https://example.com:443/a#section", "https://example.com/a"),
    ("http://example.com:80/a", "http://example.com/a"),
    ("https://example.com/a?utm_source=x&id=3&fbclid=abc", "https://example.com/a?id=3"),
    ("https://example.com/a?q=a%20b&page=2", "https://example.com/a?q=a%20b&page=2"),
    ("  https://example.com/a  ", "https://example.com/a"),
    ("mailto:someone@example.com", "mailto:someone@example.com"),
    ("", ""),
])
def test_sanitize_url(url, expected):
    assert sanitize_url(url) == expected


def test_absolutize_url():
    assert absolutize_url("/img.png", "https://example.com/blog/post") == "https://example.com/img.png"
    assert absolutize_url("img.png", "https://example.com/blog/post") == "https://example.com/blog/img.png"
    assert absolutize_url("https://cdn.example.net/x", "https://example.com/") == "https://cdn.example.net/x"
    assert absolutize_url("  ", "https://example.com/") == ""
    assert absolutize_url(None, "https://example.com/") == ""


def test_parse_content_type():
    assert parse_content_type("text/HTML; Charset=\"ISO-8859-1\"") == ("text/html", "iso-8859-1")
    assert parse_content_type("application/rss+xml") == ("application/rss+xml", None)
    assert parse_content_type(None) == ("", None)


def test_decode_body():
    assert decode_body("déjà vu".encode("utf-8"), "text/html; charset=utf-8") == "déjà vu"
    assert decode_body("déjà vu".encode("iso-8859-1"), "text/plain; charset=iso-8859-1") == "déjà vu"
    assert decode_body(b"", "text/html") == ""


def test_decode_body_detects_charset_declared_in_the_document():
    """Scenario: a windows-1252 page whose header only says text/html."""
    body = '<html><head><meta charset="windows-1252"></head><body>Caf\u00e9 \u201cquoted\u201d</body></html>'.encode("cp1252")

    text = decode_body(body, "text/html")

    assert "Caf\u00e9 \u201cquoted\u201d" in text


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(-5) == "0s"


def test_truncate_string():
    assert truncate_string("short", 10) == "short"
    assert truncate_string("a" * 20, 10) == "aaaaaaa..."
    assert truncate_string("abcdef", 2) == "ab"
