import pytest
import threading
import time

from http.server import BaseHTTPRequestHandler
from http.server import ThreadingHTTPServer
from modproxy import Config
from modproxy import ProxyServer
from types import SimpleNamespace

class Upstream(BaseHTTPRequestHandler):
    def read_body(self):
        if self.headers.get("Transfer-Encoding") == "chunked":
            body = b""
            while size := int(self.rfile.readline(), 16):
                body += self.rfile.read(size)
                self.rfile.readline()
            self.rfile.readline()
            return body
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length else b""

    def write_slowly(self, data):
        try:
            for byte in data:
                self.wfile.write(bytes([byte]))
                time.sleep(self.server.interval)
        except OSError:
            # Proxy gave up and closed the connection.
            pass

    def serve(self):
        self.server.received.append(SimpleNamespace(
            method=self.command, path=self.path, headers=self.headers, body=self.read_body()))
        if self.server.raw is not None:
            return self.write_slowly(self.server.raw)
        time.sleep(self.server.delay)
        status, headers, payload = self.server.reply
        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.end_headers()
        if self.command == "HEAD":
            return
        if self.server.interval:
            return self.write_slowly(payload)
        self.wfile.write(payload)

    do_DELETE = do_GET = do_HEAD = do_PATCH = do_POST = do_PUT = serve

    def log_message(self, format, *args):
        pass

def run(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server

def stop(server):
    server.shutdown()
    server.server_close()

@pytest.fixture
def upstream():
    server = ThreadingHTTPServer(("127.0.0.1", 0), Upstream)
    server.received = []
    server.delay = 0
    server.interval = 0
    server.raw = None
    server.reply = (200, {"Content-Type": "text/plain", "Content-Length": "5"}, b"hello")
    server.url = f"http://127.0.0.1:{server.server_address[1]}"
    yield run(server)
    stop(server)

@pytest.fixture
def make_proxy():
    servers = []
    def make(**kwargs):
        server = ProxyServer(Config(**kwargs), ("127.0.0.1", 0))
        server.url = f"http://127.0.0.1:{server.server_address[1]}"
        servers.append(run(server))
        return server
    yield make
    for server in servers:
        stop(server)

@pytest.fixture
def proxy(make_proxy):
    return make_proxy()
