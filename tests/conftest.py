import dataclasses
import datetime
import logging
import threading
import pytest

from blobkey import Response
from blobkey.config import Environment
from blobkey.blob import BlobClient

FIXED_NOW = datetime.datetime(2026, 10, 16, 10, 0, 0, tzinfo=datetime.timezone.utc)


@pytest.fixture(autouse=True)
def logconf(caplog):
    caplog.set_level(logging.DEBUG)


@pytest.fixture(scope="session")
def storage_account():
    return "devstoreaccount1"


@pytest.fixture(scope="session")
def shared_key():
    return "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw=="


@pytest.fixture
def api_url(storage_account):
    return f"https://{storage_account}.blob.core.windows.net"


@pytest.fixture
def env(storage_account, shared_key, api_url):
    return Environment(
        account_name=storage_account, account_key=shared_key, api_url=api_url
    )


class FakeTransport:
    """records requests, answers with a canned response or raises"""

    def __init__(self, response=None, error=None):
        self.response = response or Response(status=200)
        self.error = error
        self.requests = []
        self.lock = threading.Lock()

    def __call__(self, request):
        if not isinstance(request.body, bytes):
            # keep what a streamed body would have sent
            request = dataclasses.replace(request, body=request.body.read())
        with self.lock:
            self.requests.append(request)
        if self.error is not None:
            raise self.error
        return Response(
            status=self.response.status,
            headers=self.response.headers,
            body=self.response.body,
            url=request.full_url(),
        )

    @property
    def last(self):
        return self.requests[-1]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(env, transport):
    return BlobClient(env, transport=transport, clock=lambda: FIXED_NOW)
