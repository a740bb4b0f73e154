import http.client
import socket
import threading
import urllib.error
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import pytest
from blobkey import *
from blobkey.config import Environment
from blobkey.blob import BlobClient


class BlobHandler(BaseHTTPRequestHandler):
    """a tiny stand-in for the blob service, only checks that requests
    are signed"""

    blobs = {}
    seen = []

    def log_message(self, format, *args):
        pass

    def reply(self, status, body=b""):
        self.send_response(status)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def authorized(self):
        self.seen.append(
            (self.command, self.path, {k.lower(): v for k, v in self.headers.items()})
        )
        return (self.headers.get("Authorization") or "").startswith("SharedKey ")

    def do_PUT(self):
        if not self.authorized():
            return self.reply(403, b"AuthenticationFailed")
        length = int(self.headers.get("Content-Length", 0))
        self.blobs[self.path.split("?")[0]] = self.rfile.read(length)
        self.reply(201)

    def do_GET(self):
        if not self.authorized():
            return self.reply(403, b"AuthenticationFailed")
        path = self.path.split("?")[0]
        if path in self.blobs:
            return self.reply(200, self.blobs[path])
        self.reply(404, b"BlobNotFound")


@pytest.fixture
def server():
    BlobHandler.blobs = {}
    BlobHandler.seen = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), BlobHandler)
    thread = threading.Thread(target=httpd.serve_forever)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()
    thread.join(5)


@pytest.fixture
def local_env(server, storage_account, shared_key):
    host, port = server.server_address
    return Environment(
        account_name=storage_account,
        account_key=shared_key,
        api_url=f"http://{host}:{port}/{storage_account}",
    )


def test_transport_statuses(local_env):
    transport = UrllibTransport(timeout=5)
    url = f"{local_env.api_url}/c1/a.txt"
    response = transport(Request(url=url))
    assert response.status == 403
    assert response.body == b"AuthenticationFailed"
    assert response.get_header("content-length") == "20"

    response = transport(
        Request(
            url=url,
            method="PUT",
            headers=[("Authorization", "SharedKey x:y")],
            body=b"hello",
            options={"timeout": None},
        )
    )
    assert response.status == 201
    response = transport(Request(url=url, headers=[("Authorization", "SharedKey x:y")]))
    assert (response.status, response.body) == (200, b"hello")


def test_transport_merges_repeated_headers(local_env):
    transport = UrllibTransport(timeout=5)
    transport(
        Request(
            url=f"{local_env.api_url}/c1/a.txt",
            headers=[("x-ms-meta-a", "1"), ("X-MS-META-A", "2")],
        )
    )
    (method, path, headers) = BlobHandler.seen[-1]
    assert headers["x-ms-meta-a"] == "1,2"
    assert headers["user-agent"] == USER_AGENT


def test_transport_connection_refused(unused_tcp_port):
    transport = UrllibTransport(timeout=5)
    with pytest.raises(urllib.error.URLError):
        transport(Request(url=f"http://127.0.0.1:{unused_tcp_port}/"))


def test_client_roundtrip(local_env, storage_account):
    client = BlobClient(local_env, transport=UrllibTransport(timeout=5))
    assert client.put_blob("dir/a b.txt", b"hello", "text/plain", "c1").ok
    method, path, headers = BlobHandler.seen[-1]
    assert path == f"/{storage_account}/c1/dir/a%20b.txt"
    assert headers["x-ms-blob-type"] == "BlockBlob"
    assert headers["content-type"] == "text/plain"
    assert client.get_blob("dir/a b.txt", "c1").unwrap() == b"hello"
    result = client.get_blob("missing.txt", "c1")
    assert result.response.status == 404
    assert result.response.body == b"BlobNotFound"


def test_client_unreachable(storage_account, shared_key, unused_tcp_port):
    env = Environment(
        account_name=storage_account,
        account_key=shared_key,
        api_url=f"http://127.0.0.1:{unused_tcp_port}",
    )
    result = BlobClient(env, transport=UrllibTransport(timeout=5)).list_blobs("c1")
    assert isinstance(result.error, urllib.error.URLError)


@pytest.fixture
def raw_server():
    """answers a single connection with the given raw bytes, then closes"""
    servers = []

    def start(reply):
        sock = socket.create_server(("127.0.0.1", 0))
        servers.append(sock)

        def target():
            conn, _ = sock.accept()
            with conn:
                data = b""
                while b"\r\n\r\n" not in data:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    data += chunk
                conn.sendall(reply)

        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        return sock.getsockname()[1]

    yield start
    for sock in servers:
        sock.close()


@pytest.mark.parametrize(
    ["reply", "error"],
    [
        (b"garbage\r\n\r\n", http.client.BadStatusLine),
        (
            b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\nshort",
            http.client.IncompleteRead,
        ),
    ],
)
def test_client_broken_response(raw_server, storage_account, shared_key, reply, error):
    port = raw_server(reply)
    env = Environment(
        account_name=storage_account,
        account_key=shared_key,
        api_url=f"http://127.0.0.1:{port}",
    )
    result = BlobClient(env, transport=UrllibTransport(timeout=5)).list_blobs("c1")
    assert not result.ok
    assert isinstance(result.error, error)
    with pytest.raises(error):
        result.unwrap()


def test_client_streamed_upload(local_env, storage_account, tmp_path):
    client = BlobClient(local_env, transport=UrllibTransport(timeout=5))
    path = tmp_path / "upload.bin"
    path.write_bytes(b"0123456789" * 1000)
    with path.open("rb") as f:
        f.seek(10)
        assert client.put_blob("big.bin", f, "application/octet-stream", "c1").ok
    method, _, headers = BlobHandler.seen[-1]
    assert headers["content-length"] == "9990"
    assert client.get_blob("big.bin", "c1").unwrap() == (b"0123456789" * 1000)[10:]
