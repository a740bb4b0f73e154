"""SharedKey request signing for the blob service

https://learn.microsoft.com/en-us/rest/api/storageservices/authorize-with-shared-key#blob-queue-and-file-services-shared-key-authorization
"""

import base64
import binascii
import dataclasses
import hashlib
import hmac
import logging
import urllib.parse
from collections import defaultdict
from typing import Optional
from . import Request, ConfigurationError, header_values

logger = logging.getLogger(__name__)

# order matters, this is the order they appear in the string to sign
HEADERS_TO_SIGN = [
    "Content-Encoding",
    "Content-Language",
    "Content-Length",
    "Content-MD5",
    "Content-Type",
    "Date",
    "If-Modified-Since",
    "If-Match",
    "If-None-Match",
    "If-Unmodified-Since",
    "Range",
]


def decode_key(account_key: str) -> bytes:
    if not account_key:
        raise ConfigurationError("storage account key is empty")
    try:
        return base64.b64decode(account_key, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise ConfigurationError("storage account key is not valid base64") from e


def canonicalized_headers(headers) -> list[str]:
    merged = defaultdict(list)
    for k, v in headers:
        if k.lower().startswith("x-ms-"):
            merged[k.lower()].append(v.strip())
    return [k + ":" + ",".join(merged[k]) for k in sorted(merged)]


def canonicalized_resource(request: Request, account_name: str) -> str:
    parsed = urllib.parse.urlsplit(request.url)
    params = defaultdict(list)
    for k, v in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True):
        params[k.lower()].append(v)
    for k, v in request.params:
        params[str(k).lower()].append(str(v))
    lines = ["/" + account_name + (parsed.path or "/")]
    lines += [k + ":" + ",".join(sorted(params[k])) for k in sorted(params)]
    return "\n".join(lines)


def string_to_sign(request: Request, account_name: str) -> str:
    lines = [request.method.upper()]
    for name in HEADERS_TO_SIGN:
        if name == "Content-Length":
            # always derived from the body, "0" when there is none
            lines.append(str(request.content_length()))
        else:
            lines.append(",".join(header_values(request.headers, name)))
    lines += canonicalized_headers(request.headers)
    lines.append(canonicalized_resource(request, account_name))
    return "\n".join(lines)


def compute_signature(message: str, key: bytes) -> str:
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign(
    request: Request,
    account_name: str,
    account_key: str,
    content_type: Optional[str] = None,
) -> Request:
    """returns a copy of ``request`` carrying the Authorization header

    When ``content_type`` is given it replaces any Content-Type header, so
    the value sent is always the value signed.
    """
    key = decode_key(account_key)
    headers = [(k, v) for k, v in request.headers if k.lower() != "authorization"]
    if content_type is not None:
        headers = [(k, v) for k, v in headers if k.lower() != "content-type"]
        headers.append(("Content-Type", content_type))
    request = dataclasses.replace(request, headers=headers)
    message = string_to_sign(request, account_name)
    logger.debug("string to sign: %r", message)
    signature = compute_signature(message, key)
    return dataclasses.replace(
        request,
        headers=headers + [("Authorization", f"SharedKey {account_name}:{signature}")],
    )
