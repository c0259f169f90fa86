from typing import Dict, List, Optional, Union
from dataclasses import dataclass
from http import HTTPStatus
from urllib.parse import urlsplit
import json

HeaderValue = Union[str, List[str]]

# Headers that describe a single connection and must not be forwarded
HOP_BY_HOP_HEADERS = frozenset({
    'connection', 'keep-alive', 'proxy-connection', 'proxy-authenticate',
    'proxy-authorization', 'te', 'trailer', 'upgrade'
})


def status_phrase(status_code: int) -> str:
    """Return the standard reason phrase for a status code."""
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return ""


def get_header(headers: Dict[str, HeaderValue], name: str) -> Optional[HeaderValue]:
    """Case-insensitive header lookup."""
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def merge_headers(base: Dict[str, HeaderValue],
                  overrides: Dict[str, HeaderValue]) -> Dict[str, HeaderValue]:
    """Merge two header maps, letting ``overrides`` win on case-insensitive collision."""
    lowered = {key.lower() for key in overrides}
    merged = {k: v for k, v in base.items() if k.lower() not in lowered}
    merged.update(overrides)
    return merged


def _parse_header_lines(lines: List[str]) -> Dict[str, HeaderValue]:
    headers: Dict[str, HeaderValue] = {}
    for line in lines:
        if not line:
            continue
        key, value = line.split(':', 1)
        key, value = key.strip(), value.strip()
        existing = get_header(headers, key)
        if existing is None:
            headers[key] = value
        else:
            # Keep repeated headers (Set-Cookie) as separate lines
            original_key = next(k for k in headers if k.lower() == key.lower())
            if isinstance(existing, list):
                existing.append(value)
            else:
                headers[original_key] = [existing, value]
    return headers


def _serialize_head(first_line: str, headers: Dict[str, HeaderValue]) -> bytes:
    lines = [first_line]
    for key, value in headers.items():
        for item in (value if isinstance(value, list) else [value]):
            lines.append(f"{key}: {item}")
    return ('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1')


@dataclass
class HTTPRequest:
    """Model representing an inbound HTTP request with a fully buffered body."""
    method: str
    target: str
    protocol: str
    headers: Dict[str, HeaderValue]
    body: bytes = b''

    @property
    def path(self) -> str:
        """Request path without the query string."""
        return urlsplit(self.target).path or '/'

    def header(self, name: str) -> Optional[HeaderValue]:
        return get_header(self.headers, name)

    def to_bytes(self) -> bytes:
        """Serialize the request line, headers and body."""
        request_line = f"{self.method} {self.target} {self.protocol}"
        return _serialize_head(request_line, self.headers) + self.body

    @classmethod
    def from_raw_head(cls, head: bytes) -> Optional['HTTPRequest']:
        """Create an HTTPRequest from the request line and headers (no body)."""
        try:
            lines = head.decode('latin-1').split('\r\n')

            # Parse request line
            method, target, protocol = lines[0].strip().split()
            if not protocol.startswith('HTTP/'):
                return None

            return cls(
                method=method.upper(),
                target=target,
                protocol=protocol,
                headers=_parse_header_lines(lines[1:])
            )
        except Exception:
            return None


@dataclass
class HTTPResponse:
    """Model representing an HTTP response."""
    status_code: int
    status_message: str
    headers: Dict[str, HeaderValue]
    body: Union[str, bytes] = b''

    @classmethod
    def from_raw_head(cls, head: bytes) -> Optional['HTTPResponse']:
        """Create an HTTPResponse from a status line and headers, leaving the body empty."""
        try:
            status_line, *header_lines = head.decode('latin-1').split('\r\n')
            protocol, status_code, *status_message = status_line.split(' ')
            if not protocol.startswith('HTTP/'):
                return None

            return cls(
                status_code=int(status_code),
                status_message=' '.join(status_message),
                headers=_parse_header_lines(header_lines)
            )
        except Exception:
            return None

    @property
    def body_bytes(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        return self.body.encode('utf-8')

    def header(self, name: str) -> Optional[HeaderValue]:
        return get_header(self.headers, name)

    def head_bytes(self) -> bytes:
        """Serialize the status line and headers."""
        status_line = f"HTTP/1.1 {self.status_code} {self.status_message}".rstrip()
        return _serialize_head(status_line, self.headers)

    def to_bytes(self) -> bytes:
        """Serialize the full response."""
        return self.head_bytes() + self.body_bytes

    @classmethod
    def create(cls, status_code: int, body: Union[str, bytes],
               content_type: str, headers: Dict[str, HeaderValue] = None) -> 'HTTPResponse':
        """Create a complete response with Content-Length and Connection: close."""
        response = cls(
            status_code=status_code,
            status_message=status_phrase(status_code),
            headers={},
            body=body
        )
        base = {'Content-Type': content_type} if content_type else {}
        base['Content-Length'] = str(len(response.body_bytes))
        base['Connection'] = 'close'
        response.headers = merge_headers(base, headers or {})
        return response

    @classmethod
    def create_error(cls, status_code: int, message: str,
                     headers: Dict[str, HeaderValue] = None) -> 'HTTPResponse':
        """Create a plain-text error response."""
        return cls.create(status_code, message, 'text/plain', headers)

    @classmethod
    def create_json(cls, status_code: int, payload: dict,
                    headers: Dict[str, HeaderValue] = None,
                    indent: Optional[int] = None) -> 'HTTPResponse':
        """Create a JSON response."""
        body = json.dumps(payload, indent=indent)
        return cls.create(status_code, body, 'application/json', headers)

    @classmethod
    def create_empty(cls, status_code: int,
                     headers: Dict[str, HeaderValue] = None) -> 'HTTPResponse':
        """Create a response with no body (used for CORS preflight)."""
        return cls.create(status_code, b'', '', headers)
