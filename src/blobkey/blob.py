"""blob service operations

Builders return unsigned Requests, BlobClient stamps, signs, sends and
interprets them. In all operations a container of None means the default
container of the environment.
"""

import asyncio
import dataclasses
import datetime
import http.client
import mimetypes
import os
import urllib.parse
from pathlib import Path
from typing import Optional, Union, BinaryIO
import logging
from . import API_VERSION, Request, Result, UrllibTransport, interpret
from .config import Environment
from .sharedkey import sign

logger = logging.getLogger(__name__)


def _quote(segment: str) -> str:
    # keep "/" so virtual directories in blob names work
    return urllib.parse.quote(segment, safe="/")


def get_url(env: Environment, container=None, blob_name=None) -> str:
    """
    url of a container, or of a blob when ``blob_name`` is given.
    container of None falls back to env.default_container, or an empty
    segment when that is not set either
    """
    if container is None:
        container = env.default_container or ""
    url = f"{env.api_url}/{_quote(container)}"
    if blob_name is not None:
        url += "/" + _quote(blob_name)
    return url


def build_list_containers(env: Environment, params=()) -> Request:
    return Request(
        url=env.api_url + "/?comp=list",
        method="GET",
        params=list(params),
    )


def build_put_blob(
    env: Environment,
    name: str,
    body: Union[bytes, str, BinaryIO],
    container=None,
    params=(),
) -> Request:
    """
    ``body`` may also be a binary file object, which is streamed from its
    current position to the end
    """
    headers = [("x-ms-blob-type", "BlockBlob")]
    if isinstance(body, str):
        body = body.encode("utf-8")
    elif not isinstance(body, (bytes, bytearray)):
        size = os.fstat(body.fileno()).st_size - body.tell()
        headers.append(("Content-Length", str(size)))
    return Request(
        url=get_url(env, container, name),
        method="PUT",
        headers=headers,
        params=list(params),
        body=body,
        # the service answers only after the whole body has been received,
        # so a read timeout makes no sense here
        options={"timeout": None},
    )


def build_get_blob(env: Environment, name: str, container=None, params=()) -> Request:
    return Request(
        url=get_url(env, container, name),
        method="GET",
        params=list(params),
    )


def build_list_blobs(env: Environment, container=None, params=()) -> Request:
    return Request(
        url=get_url(env, container),
        method="GET",
        params=[("comp", "list"), ("restype", "container")] + list(params),
    )


def http_date(now: datetime.datetime) -> str:
    return now.astimezone(datetime.timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def stamp_headers(request: Request, now: datetime.datetime) -> Request:
    """adds x-ms-date, x-ms-version and Content-Length if not already set"""
    present = {k.lower() for k, _ in request.headers}
    extra = [
        (k, v)
        for k, v in [
            ("x-ms-date", http_date(now)),
            ("x-ms-version", API_VERSION),
            ("Content-Length", str(request.content_length())),
        ]
        if k.lower() not in present
    ]
    return dataclasses.replace(request, headers=list(request.headers) + extra)


class BlobClient:
    """
    client bound to a single environment. Holds nothing mutable, so a single
    instance can be shared by any number of threads or tasks.

    ``transport`` is any callable taking a Request and returning a Response,
    raising on failures below HTTP. ``clock`` returns an aware datetime used
    for x-ms-date.
    """

    def __init__(self, env: Environment, transport=None, clock=utcnow):
        self.env = env
        self.transport = transport or UrllibTransport(timeout=30)
        self.clock = clock

    def get_url(self, container=None, blob_name=None) -> str:
        return get_url(self.env, container, blob_name)

    def prepare(self, request: Request, content_type: Optional[str] = None):
        request = stamp_headers(request, self.clock())
        return sign(
            request,
            self.env.account_name,
            self.env.account_key,
            content_type=content_type,
        )

    def execute(
        self,
        request: Request,
        expected_status: int,
        with_body: bool,
        content_type: Optional[str] = None,
    ) -> Result:
        request = self.prepare(request, content_type)
        try:
            outcome = self.transport(request)
        except (OSError, http.client.HTTPException) as e:
            # URLError, socket timeouts, DNS failures, garbled or truncated
            # responses
            outcome = e
        return interpret(outcome, expected_status, with_body)

    def list_containers(self, params=()) -> Result:
        """Success carries the raw xml listing"""
        return self.execute(
            build_list_containers(self.env, params), 200, with_body=True
        )

    def put_blob(
        self,
        name: str,
        body: Union[bytes, str, BinaryIO],
        content_type: str,
        container=None,
        params=(),
    ) -> Result:
        request = build_put_blob(self.env, name, body, container, params)
        logger.debug("putting blob %s (%d bytes)", name, request.content_length())
        return self.execute(
            request,
            201,
            with_body=False,
            content_type=content_type,
        )

    def get_blob(self, name: str, container=None, params=()) -> Result:
        """Success carries the blob content as bytes"""
        return self.execute(
            build_get_blob(self.env, name, container, params), 200, with_body=True
        )

    def list_blobs(self, container=None, params=()) -> Result:
        return self.execute(
            build_list_blobs(self.env, container, params), 200, with_body=True
        )

    async def run_async(self, func, *args, executor=None, **kwargs):
        """runs one of the blocking operations without blocking the loop"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, lambda: func(*args, **kwargs))


class Uploader:
    """uploader interface. Uploader should either implement the async or the
    sync version"""

    async def upload_async(self, path: Path, name: str):
        raise NotImplementedError

    def upload_sync(self, path: Path, name: str):
        raise NotImplementedError


async def upload(uploader: Uploader, path, name, executor=None):
    """prefers the async flavour, falls back to running the sync one in
    ``executor``"""
    try:
        return await uploader.upload_async(path, name)
    except NotImplementedError:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, uploader.upload_sync, path, name)


class BlobUploader(Uploader):
    """uploads local files as block blobs, returns the blob url"""

    def __init__(self, client: BlobClient, container=None, directory=""):
        self.client = client
        self.container = container
        self.directory = directory.strip("/")

    def blob_name(self, name):
        return f"{self.directory}/{name}" if self.directory else name

    def upload_sync(self, path, name):
        path = Path(path)
        if not path.is_file():
            raise RuntimeError(f"path {path} not a file")
        content_type, _ = mimetypes.guess_type(name)
        content_type = content_type or "application/octet-stream"
        blob_name = self.blob_name(name)
        logger.info("uploading %s to %s as %s", path, blob_name, content_type)
        # caller should guarantee no further change to the file
        with path.open("rb") as f:
            self.client.put_blob(
                blob_name, f, content_type, container=self.container
            ).unwrap()
        return self.client.get_url(self.container, blob_name)
