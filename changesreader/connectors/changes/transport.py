"""
HTTP transport for the changes reader, built on requests.

The reader only depends on the ``Transport`` protocol; ``RequestsTransport``
is the default implementation talking to a CouchDB-compatible server.
"""

from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Tuple, Union
import json

import requests

from .models import ChangesRequest
from ...utils.logging import get_logger

logger = get_logger(__name__)

# Extra seconds on top of the long-poll timeout before the client gives up
DEFAULT_TIMEOUT_SLACK = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_CHUNK_SIZE = 64 * 1024


class ChangesReaderError(Exception):
    """Base exception for changes reader errors."""
    pass


class ChangesRequestError(ChangesReaderError):
    """The server answered with an HTTP error status."""

    def __init__(self, status_code: int, reason: Optional[str] = None, error: Optional[str] = None):
        self.status_code = status_code
        self.reason = reason
        self.error = error
        message = f"HTTP {status_code}"
        if error:
            message += f" {error}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ChangesTransportError(ChangesReaderError):
    """The request never produced an HTTP response (DNS, connect, reset, timeout)."""
    pass


class MalformedResponseError(ChangesReaderError):
    """The response body was not the JSON object the feed promises."""
    pass


def is_fatal(error: BaseException) -> bool:
    """Client errors end the run, except 429 which is a rate limit."""
    status_code = getattr(error, "status_code", None)
    if not isinstance(status_code, int):
        return False
    return 400 <= status_code < 500 and status_code != 429


class Transport(Protocol):
    """Boundary between the reader and whatever performs HTTP."""

    def request(self, req: ChangesRequest) -> Dict[str, Any]: ...

    def stream(self, req: ChangesRequest) -> Iterator[Union[bytes, str]]: ...


def encode_query(query: Mapping[str, Any]) -> Dict[str, str]:
    """Encode query values the way CouchDB parses them (JSON for non-strings)."""
    encoded = {}
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, str):
            encoded[key] = value
        else:
            encoded[key] = json.dumps(value, separators=(",", ":"))
    return encoded


def _error_from_response(response: requests.Response) -> ChangesRequestError:
    error = None
    reason = None
    try:
        body = response.json()
        if isinstance(body, dict):
            error = body.get("error")
            reason = body.get("reason")
    except ValueError:
        reason = response.text[:200] or None
    return ChangesRequestError(response.status_code, reason=reason, error=error)


class RequestsTransport:
    """Transport backed by a requests Session.

    Example:
        >>> transport = RequestsTransport("http://localhost:5984", auth=("admin", "pass"))
        >>> transport.request(ChangesRequest("POST", "mydb/_changes", {"since": "now"}))
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[Tuple[str, str]] = None,
        verify: bool = True,
        timeout_slack: float = DEFAULT_TIMEOUT_SLACK,
        session: Optional[requests.Session] = None
    ):
        """Initialize the transport.

        Args:
            url: Server root URL, credentials may be embedded
            headers: Extra headers sent with every request
            auth: Optional (username, password) for basic auth
            verify: Verify TLS certificates
            timeout_slack: Seconds added to the long-poll timeout for the read timeout
            session: Optional preconfigured session
        """
        self.url = url.rstrip("/")
        self.timeout_slack = timeout_slack
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if headers:
            self.session.headers.update(dict(headers))
        if auth:
            self.session.auth = auth
        self.session.verify = verify

    def _send(self, req: ChangesRequest, stream: bool = False) -> requests.Response:
        url = f"{self.url}/{req.path.lstrip('/')}"
        poll_timeout_ms = req.query.get("timeout")
        read_timeout = self.timeout_slack
        if isinstance(poll_timeout_ms, (int, float)):
            read_timeout += poll_timeout_ms / 1000.0

        logger.debug(
            f"{req.method.upper()} {req.path}",
            extra={"path": req.path, "query": req.query, "stream": stream, "read_timeout": read_timeout}
        )
        try:
            response = self.session.request(
                req.method.upper(),
                url,
                params=encode_query(req.query),
                json=req.body,
                timeout=(DEFAULT_CONNECT_TIMEOUT, read_timeout),
                stream=stream
            )
        except requests.RequestException as e:
            raise ChangesTransportError(f"Request to {url} failed: {e}") from e

        if response.status_code >= 400:
            err = _error_from_response(response)
            response.close()
            raise err
        return response

    def request(self, req: ChangesRequest) -> Dict[str, Any]:
        """Perform a request and return the decoded JSON object."""
        response = self._send(req)
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response from {req.path} is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise MalformedResponseError(f"Response from {req.path} is not a JSON object")
        return body

    def stream(self, req: ChangesRequest) -> Iterator[bytes]:
        """Perform a request and yield the raw body chunks as they arrive."""
        response = self._send(req, stream=True)
        try:
            for chunk in response.iter_content(chunk_size=DEFAULT_CHUNK_SIZE):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise ChangesTransportError(f"Stream from {req.path} broke off: {e}") from e
        finally:
            response.close()

    def close(self) -> None:
        self.session.close()
