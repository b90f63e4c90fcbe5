import pytest
import pytest_asyncio

from cache import ResponseCache
from errors import TransportError
from http_client import Response
from models import DatabaseQueue
from ratelimit import FetchLog


class FakeHttp:
    """Stands in for HttpClient: canned responses per URL, records requests."""

    def __init__(self):
        self.responses = {}
        self.requests = []

    def add(self, url, body=b"", status=200, content_type="text/html; charset=utf-8", headers=None):
        if isinstance(body, str):
            body = body.encode('utf-8')
        pairs = [("Content-Type", content_type)] if content_type else []
        pairs += list(headers or [])
        self.responses[url] = Response(status=status, headers=pairs, body=body, reason="OK" if status == 200 else "")

    def fail(self, url, message="Connection refused"):
        self.responses[url] = TransportError(message, url=url)

    async def get(self, url, headers=None):
        self.requests.append(url)
        value = self.responses.get(url)
        if value is None:
            raise TransportError("Connection refused", url=url)
        if isinstance(value, Exception):
            raise value
        return value


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def cache(tmp_path):
    return ResponseCache(str(tmp_path / "cache"), ttl_seconds=3600)


@pytest.fixture
def fetch_log(db):
    return FetchLog(db, window_seconds=60, threshold=25, sleep_range=(0.0, 0.0))
