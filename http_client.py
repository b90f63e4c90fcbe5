#!/usr/bin/env python3
"""
HTTP client used by the fetch orchestrator.

Wraps a shared aiohttp ClientSession with the user agent, timeout and redirect
policy of the ingestor, and defines the Response value that is handed
downstream and serialized verbatim into the response cache.
"""

from dataclasses import dataclass, field
from asyncio import TimeoutError
from typing import List, Optional, Tuple
import re

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import get_logger
from errors import TransportError
from telemetry import trace_span
from utils import decode_body

# Module-specific logger
logger = get_logger("http")

STATUS_LINE_RE = re.compile(r'^(HTTP/[\d.]+)\s+(\d{3})(?:\s+(.*))?$')


def _decode_raw_headers(raw_headers) -> List[Tuple[str, str]]:
    """Header pairs as received on the wire.

    Latin-1 maps every byte to one character, so to_bytes() writes back
    exactly the bytes the server sent, whatever their encoding.
    """
    return [(key.decode('latin-1'), value.decode('latin-1')) for key, value in raw_headers]


@dataclass
class Response:
    """A complete HTTP response: status line, headers and raw body bytes."""

    status: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    reason: str = ""
    version: str = "HTTP/1.1"

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return the first value of a header, matched case-insensitively."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return default

    @property
    def content_type(self) -> str:
        return self.header('Content-Type', '') or ''

    @property
    def text(self) -> str:
        """Body decoded to a str using the declared or detected charset."""
        return decode_body(self.body, self.content_type)

    def to_bytes(self) -> bytes:
        """Serialize as a raw HTTP message (status line, headers, blank line, body)."""
        status_line = f"{self.version} {self.status}"
        if self.reason:
            status_line += f" {self.reason}"
        lines = [status_line] + [f"{key}: {value}" for key, value in self.headers]
        head = "\r\n".join(lines) + "\r\n\r\n"
        return head.encode('latin-1', errors='replace') + self.body

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Response":
        """Parse a raw HTTP message produced by to_bytes (or written by hand).

        Both CRLF and bare LF line endings are accepted in the head; the body
        is returned byte for byte.

        Raises:
            ValueError: If the status line is malformed.
        """
        crlf = raw.find(b"\r\n\r\n")
        lf = raw.find(b"\n\n")
        if crlf != -1 and (lf == -1 or crlf <= lf):
            head, body = raw[:crlf], raw[crlf + 4:]
        elif lf != -1:
            head, body = raw[:lf], raw[lf + 2:]
        else:
            head, body = raw, b""

        head_lines = [line.rstrip('\r') for line in head.decode('latin-1').split('\n')]
        if not head_lines:
            raise ValueError("Empty HTTP message")
        match = STATUS_LINE_RE.match(head_lines[0].strip())
        if not match:
            raise ValueError(f"Invalid status line: {head_lines[0]!r}")
        version, status, reason = match.groups()

        headers = []
        for line in head_lines[1:]:
            if ':' not in line:
                continue
            key, value = line.split(':', 1)
            headers.append((key.strip(' \t'), value.strip(' \t')))

        return cls(status=int(status), headers=headers, body=body, reason=(reason or "").strip(), version=version)


class HttpClient:
    """Minimal GET client raising TransportError when no response is obtained."""

    def __init__(self, user_agent: str, timeout: float = 20, max_redirects: int = 5,
                 session: Optional[ClientSession] = None) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    @trace_span(
        "http.get",
        tracer_name="http",
        attr_from_args=lambda self, url, headers=None: {"http.url": url},
    )
    async def get(self, url: str, headers: Optional[dict] = None) -> Response:
        """GET a URL and read the full body.

        Raises:
            TransportError: On connection errors, invalid URLs, too many
                redirects or timeouts. Partial bodies are discarded.
        """
        session = await self._get_session()
        request_headers = {'User-Agent': self.user_agent}
        if headers:
            request_headers.update(headers)
        try:
            async with session.get(
                url,
                headers=request_headers,
                timeout=ClientTimeout(total=self.timeout),
                max_redirects=self.max_redirects,
            ) as response:
                body = await response.read()
                version = f"HTTP/{response.version.major}.{response.version.minor}" if response.version else "HTTP/1.1"
                return Response(
                    status=response.status,
                    headers=_decode_raw_headers(response.raw_headers),
                    body=body,
                    reason=response.reason or "",
                    version=version,
                )
        except TimeoutError as e:
            logger.warning(f"Timeout fetching {url} (timeout={self.timeout}s)")
            raise TransportError(f"Timeout after {self.timeout}s", url=url) from e
        except ClientError as e:
            detail = self._format_client_error(e)
            logger.warning(f"Error fetching {url}: {detail}")
            raise TransportError(detail, url=url) from e
        except ValueError as e:
            # yarl rejects some malformed URLs before any connection is made
            raise TransportError(f"Invalid URL: {e}", url=url) from e

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
