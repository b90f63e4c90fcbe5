import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import TransportError
from http_client import HttpClient, Response


def test_response_from_bytes_crlf():
    raw = b"HTTP/1.1 404 Not Found\r\nContent-Type: text/plain\r\nX-Thing: a: b\r\n\r\nmissing\r\n\r\nbody"
    response = Response.from_bytes(raw)

    assert response.status == 404
    assert response.reason == 'Not Found'
    assert response.version == 'HTTP/1.1'
    assert response.headers == [('Content-Type', 'text/plain'), ('X-Thing', 'a: b')]
    assert response.body == b"missing\r\n\r\nbody"
    assert not response.success


def test_response_from_bytes_lf_and_http2_status_line():
    raw = b"HTTP/2 200 OK\nContent-Type: text/html\n\n<html><title>Hi</title></html>"
    response = Response.from_bytes(raw)

    assert response.status == 200
    assert response.version == 'HTTP/2'
    assert response.header('content-type') == 'text/html'
    assert response.body == b"<html><title>Hi</title></html>"
    assert response.success


def test_response_round_trip_keeps_body_bytes():
    body = "café".encode('latin-1') + b"\x00\xff"
    response = Response(status=200, headers=[('Content-Type', 'application/octet-stream')], body=body, reason='OK')
    assert Response.from_bytes(response.to_bytes()) == response


def test_response_from_bytes_rejects_garbage():
    with pytest.raises(ValueError):
        Response.from_bytes(b"<html>not a response</html>")


def test_header_lookup_is_case_insensitive():
    response = Response(status=200, headers=[('content-TYPE', 'text/html'), ('Set-Cookie', 'a=1'), ('Set-Cookie', 'b=2')])
    assert response.header('Content-Type') == 'text/html'
    assert response.header('set-cookie') == 'a=1'
    assert response.header('missing') is None
    assert response.header('missing', 'default') == 'default'


def test_response_text_uses_declared_charset():
    response = Response(status=200, headers=[('Content-Type', 'text/html; charset=iso-8859-1')],
                        body="français".encode('iso-8859-1'))
    assert response.text == "français"


def test_response_text_detects_charset_without_header_charset():
    """Scenario: bare text/html header, charset only declared by a meta tag."""
    body = '<html><head><meta charset="windows-1252"></head><body>na\u00efve \u2013 ok</body></html>'.encode('cp1252')
    response = Response(status=200, headers=[('Content-Type', 'text/html')], body=body)
    assert 'na\u00efve \u2013 ok' in response.text


async def hello(request):
    return web.Response(text=f"hello {request.headers.get('User-Agent')}", content_type='text/plain')


async def slow(request):
    await asyncio.sleep(2)
    return web.Response(text="too late")


async def not_found(request):
    return web.Response(status=404, text="nope")


async def non_ascii_header(request):
    return web.Response(text="ok", headers={'X-Title': 'caf\u00e9'})


def make_app():
    app = web.Application()
    app.router.add_get('/hello', hello)
    app.router.add_get('/slow', slow)
    app.router.add_get('/missing', not_found)
    app.router.add_get('/non-ascii', non_ascii_header)
    return app


@pytest.mark.asyncio
async def test_get_returns_full_response():
    client = HttpClient('TestAgent/1.0', timeout=5)
    try:
        async with TestServer(make_app()) as server:
            response = await client.get(str(server.make_url('/hello')))
            missing = await client.get(str(server.make_url('/missing')))
    finally:
        await client.close()

    assert response.status == 200
    assert response.body == b'hello TestAgent/1.0'
    assert response.header('content-type').startswith('text/plain')
    # HTTP errors are responses, not exceptions
    assert missing.status == 404
    assert missing.body == b'nope'


@pytest.mark.asyncio
async def test_timeout_raises_transport_error():
    client = HttpClient('TestAgent/1.0', timeout=0.2)
    try:
        async with TestServer(make_app()) as server:
            with pytest.raises(TransportError):
                await client.get(str(server.make_url('/slow')))
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connection_error_raises_transport_error():
    client = HttpClient('TestAgent/1.0', timeout=5)
    try:
        with pytest.raises(TransportError) as excinfo:
            await client.get('http://127.0.0.1:1/')
    finally:
        await client.close()
    assert excinfo.value.url == 'http://127.0.0.1:1/'


def test_from_bytes_keeps_non_ascii_header_bytes():
    """Header bytes outside ASCII survive a cache round trip unchanged."""
    raw = b"HTTP/1.1 200 OK\r\nX-Title: caf\xc3\xa9 \x85\xa0end\r\n\r\nbody"
    assert Response.from_bytes(raw).to_bytes() == raw


@pytest.mark.asyncio
async def test_get_keeps_header_bytes_as_received():
    """A UTF-8 header value from the server is written back byte for byte."""
    client = HttpClient('TestAgent/1.0', timeout=5)
    try:
        async with TestServer(make_app()) as server:
            response = await client.get(str(server.make_url('/non-ascii')))
    finally:
        await client.close()

    assert b"X-Title: caf\xc3\xa9\r\n" in response.to_bytes()
