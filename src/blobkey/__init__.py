from typing import Optional, Any, Union, BinaryIO
from dataclasses import dataclass, field
import sys
import urllib.request
import urllib.error
import urllib.parse
import logging

# ------------------------------------------------------------------------------
# Constants
# ------------------------------------------------------------------------------
__version__ = "0.1.0-dev"
USER_AGENT = f"blobkey/{__version__}"
API_VERSION = "2019-12-12"
logger = logging.getLogger("blobkey")

if sys.version_info[0] != 3 or sys.version_info[1] < 9:
    logger.warning("untested Python interpreter %s", sys.version)

__all__ = [
    "USER_AGENT",
    "API_VERSION",
    "BlobkeyError",
    "ConfigurationError",
    "UnexpectedResponse",
    "Request",
    "Response",
    "Success",
    "Failure",
    "Result",
    "UrllibTransport",
    "header_values",
    "interpret",
]


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------
class BlobkeyError(Exception):
    pass


class ConfigurationError(BlobkeyError, ValueError):
    """bad or missing credentials / url, not recoverable at request time"""


class UnexpectedResponse(BlobkeyError):
    def __init__(self, response: "Response"):
        super().__init__(f"unexpected status {response.status} from {response.url}")
        self.response = response


# ------------------------------------------------------------------------------
# Data model
# ------------------------------------------------------------------------------
def header_values(headers, name: str) -> list[str]:
    """all values of header ``name``, case-insensitive, in insertion order"""
    name = name.lower()
    return [v for k, v in headers if k.lower() == name]


@dataclass(frozen=True)
class Request:
    """description of one HTTP request, nothing is sent until a transport
    is called with it"""

    url: str
    method: str = "GET"
    headers: list[tuple[str, str]] = field(default_factory=list)
    params: list[tuple[str, str]] = field(default_factory=list)
    # bytes, or a binary file object together with a Content-Length header
    body: Union[bytes, BinaryIO] = b""
    options: dict[str, Any] = field(default_factory=dict)

    def get_header(self, name: str, default=None) -> Optional[str]:
        values = header_values(self.headers, name)
        return ",".join(values) if values else default

    def content_length(self) -> int:
        if isinstance(self.body, (bytes, bytearray)):
            return len(self.body)
        length = self.get_header("Content-Length")
        if length is None:
            raise ValueError("streamed body requires a Content-Length header")
        return int(length)

    def full_url(self) -> str:
        """url with params appended to whatever query the url already has"""
        if not self.params:
            return self.url
        sep = "&" if urllib.parse.urlsplit(self.url).query else "?"
        return self.url + sep + urllib.parse.urlencode(self.params)


@dataclass(frozen=True)
class Response:
    status: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    url: str = ""

    def get_header(self, name: str, default=None) -> Optional[str]:
        values = header_values(self.headers, name)
        return ",".join(values) if values else default


# ------------------------------------------------------------------------------
# Results
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class Success:
    value: Any = None
    ok = True

    def unwrap(self):
        return self.value


@dataclass(frozen=True)
class Failure:
    """either a Response with an unexpected status, or the exception raised
    by the transport"""

    reason: Union[Response, BaseException]
    ok = False

    @property
    def response(self) -> Optional[Response]:
        return self.reason if isinstance(self.reason, Response) else None

    @property
    def error(self) -> Optional[BaseException]:
        return self.reason if isinstance(self.reason, BaseException) else None

    def unwrap(self):
        if self.response is not None:
            raise UnexpectedResponse(self.response)
        raise self.error


Result = Union[Success, Failure]


def interpret(outcome, expected_status: int, with_body: bool) -> Result:
    """maps a transport outcome (Response or raised exception) to a Result"""
    if isinstance(outcome, BaseException):
        logger.warning("transport error: %r", outcome)
        return Failure(outcome)
    if outcome.status != expected_status:
        logger.warning(
            "unexpected status %s (expecting %s) from %s",
            outcome.status,
            expected_status,
            outcome.url,
        )
        return Failure(outcome)
    return Success(outcome.body if with_body else None)


# ------------------------------------------------------------------------------
# Transport
# ------------------------------------------------------------------------------
def _loggable_headers(headers):
    return [(k, "***" if k.lower() == "authorization" else v) for k, v in headers]


class UrllibTransport:
    """sends a Request with urllib.request.urlopen

    ``urlopen_options`` are passed to urlopen for every request, options on
    the request itself take precedence. HTTP error statuses come back as
    Response, anything failing below HTTP raises.
    """

    def __init__(self, **urlopen_options):
        self.urlopen_options = urlopen_options

    def __call__(self, request: Request) -> Response:
        options = self.urlopen_options | request.options
        url = request.full_url()
        headers = {"User-Agent": USER_AGENT}
        for k in {k.lower(): k for k, _ in request.headers}.values():
            headers[k] = request.get_header(k)
        logger.debug(
            "sending %s %s with headers: %s",
            request.method,
            url,
            _loggable_headers(headers.items()),
        )
        urlrequest = urllib.request.Request(
            url=url,
            method=request.method,
            data=request.body if request.content_length() else None,
            headers=headers,
        )
        try:
            with urllib.request.urlopen(urlrequest, **options) as f:
                response = Response(
                    status=f.status,
                    headers=list(f.headers.items()),
                    body=f.read(),
                    url=f.url,
                )
        except urllib.error.HTTPError as e:
            # HTTPError is a response, not a transport failure
            body = b""
            if e.fp is not None:
                with e:
                    body = e.read()
            response = Response(
                status=e.code,
                headers=list(e.headers.items()) if e.headers else [],
                body=body,
                url=e.filename,
            )
        logger.debug(
            "url %s got status: %s, headers: %s",
            response.url,
            response.status,
            response.headers,
        )
        return response
