#!/usr/bin/env python3

import concurrent.futures
import logging
import os
import requests
import socket
import threading
import time
import urllib3

from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler
from http.server import ThreadingHTTPServer
from urllib.parse import parse_qsl
from urllib.parse import quote
from urllib.parse import urlencode
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = "https://proxy.golang.org"
DEFAULT_PORT = 8080
DEFAULT_TIMEOUT = 30.0
HEALTH_BODY = b'{"status":"ok","service":"go-mod-graph-proxy"}'
CACHE_CONTROL = "public, max-age=3600"
CHUNK_SIZE = 32 * 1024
MAX_LINE = 64 * 1024

# Characters left as is in the path, everything else is percent-encoded.
PATH_SAFE = "/:@!$&'()*+,;=~"

# Nothing else is forwarded in either direction, cookies and auth included.
REQUEST_HEADERS = ("Accept", "Accept-Encoding", "User-Agent")
RESPONSE_HEADERS = ("Content-Type", "Content-Length", "Content-Encoding")

@dataclass(frozen=True)
class Config:
    port: int = DEFAULT_PORT
    allowed_origins: str = "*"
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_environ(cls, environ=None):
        environ = os.environ if environ is None else environ
        return cls(port=int(environ.get("PORT", DEFAULT_PORT)),
                   allowed_origins=environ.get("ALLOWED_ORIGINS", "*"))

def build_target_url(proxy_url, path, params):
    """
    Return upstream URL for `proxy_url` with `path` and pass-through `params`.

    The path of `proxy_url` is replaced, not joined, and `path` is escaped so
    that a `?` or `#` in it stays part of the path. `params` is a list of
    `(key, value)` pairs; `proxy` and `path` are dropped and the rest are
    encoded sorted by key. Raise :class:`ValueError` if `proxy_url` can't be
    parsed.
    """
    parts = urlsplit(proxy_url)
    # Raises ValueError for a port that is not a number.
    _ = parts.port
    query = sorted(((k, v) for k, v in params if k not in ("proxy", "path")),
                   key=lambda x: x[0])
    return urlunsplit((parts.scheme,
                       parts.netloc,
                       quote(path, safe=PATH_SAFE),
                       urlencode(query),
                       parts.fragment))

def is_cacheable(url):
    return "latest" not in url and "list" not in url

def read_chunked(rfile):
    """Yield the decoded body of a chunked request from `rfile`."""
    while True:
        line = rfile.readline(MAX_LINE)
        try:
            size = int(line.split(b";", 1)[0], 16)
        except ValueError:
            raise requests.exceptions.ChunkedEncodingError(
                f"Invalid chunk size {line!r}") from None
        if size == 0:
            break
        while size > 0:
            if not (chunk := rfile.read(min(size, CHUNK_SIZE))):
                raise requests.exceptions.ChunkedEncodingError(
                    "Request body ended mid-chunk")
            size -= len(chunk)
            yield chunk
        rfile.readline(MAX_LINE)
    # Trailers, up to the closing empty line.
    while rfile.readline(MAX_LINE).strip():
        pass

def shutdown_upstream(response):
    # Wakes up a read blocked on the upstream socket.
    if (sock := getattr(response.raw.connection, "sock", None)) is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as error:
        logger.debug("Upstream socket already closed: %s", error)

def discard(future):
    # Response that arrived after the deadline, nobody is waiting for it.
    if (error := future.exception()) is not None:
        return logger.debug("Late upstream failure: %s", error)
    future.result().close()

# Passed to requests as a stream, the inbound body is never read into memory.
class RequestBody:
    def __init__(self, rfile, length):
        self.rfile = rfile
        self.length = length
        self.remaining = length

    def __iter__(self):
        while chunk := self.read(CHUNK_SIZE):
            yield chunk

    def __len__(self):
        return self.length

    def read(self, size=-1):
        if self.remaining <= 0:
            return b""
        if size is None or size < 0 or size > self.remaining:
            size = self.remaining
        chunk = self.rfile.read(size)
        self.remaining -= len(chunk)
        return chunk

class Handler(BaseHTTPRequestHandler):
    def dispatch(self):
        path = urlsplit(self.path).path
        if (route := self.server.routes.get(path)) is None:
            return self.fail(404, "404 page not found")
        route(self)

    do_DELETE = do_GET = do_HEAD = do_OPTIONS = do_PATCH = do_POST = do_PUT = dispatch

    @property
    def config(self):
        return self.server.config

    def cors_headers(self):
        return {
            "Access-Control-Allow-Origin": self.config.allowed_origins,
            "Access-Control-Allow-Methods": "HEAD, GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    def respond(self, status, headers, body=b""):
        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    def fail(self, status, message, headers=None):
        headers = dict(headers or {})
        headers["Content-Type"] = "text/plain; charset=utf-8"
        headers["X-Content-Type-Options"] = "nosniff"
        self.respond(status, headers, f"{message}\n".encode())

    def bad_gateway(self, url, error, headers):
        logger.warning("%s %s failed: %s", self.command, url, error)
        self.fail(502, f"Proxy request failed: {error}", headers)

    def handle_health(self):
        self.respond(200, {"Content-Type": "application/json"}, HEALTH_BODY)

    def handle_proxy(self):
        cors = self.cors_headers()
        if self.command == "OPTIONS":
            return self.respond(200, cors)
        params = parse_qsl(urlsplit(self.path).query, keep_blank_values=True)
        query = {}
        for key, value in params:
            query.setdefault(key, value)
        if not (path := query.get("path")):
            return self.fail(400, "Missing 'path' parameter", cors)
        if not path.startswith("/"):
            path = f"/{path}"
        try:
            url = build_target_url(query.get("proxy") or DEFAULT_PROXY_URL, path, params)
        except ValueError as error:
            return self.fail(400, f"Invalid proxy URL: {error}", cors)
        try:
            body = self.request_body()
        except ValueError:
            return self.fail(400, "Invalid Content-Length", cors)
        headers = {}
        for name in REQUEST_HEADERS:
            if value := self.headers.get(name):
                headers[name] = value
        deadline = time.monotonic() + self.config.timeout
        with requests.Session() as session:
            # Drop the library's own defaults, only the copied headers go out.
            session.headers.clear()
            request = requests.Request(self.command, url, headers=headers, data=body)
            try:
                prepared = session.prepare_request(request)
            except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema) as error:
                # A URL without scheme or host is only refused once sent.
                return self.bad_gateway(url, error, cors)
            except requests.RequestException as error:
                return self.fail(500, f"Failed to create request: {error}", cors)
            try:
                response = self.send(session, prepared, deadline)
            except requests.RequestException as error:
                return self.bad_gateway(url, error, cors)
            with response:
                self.relay(url, response, cors, deadline)

    def request_body(self):
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            return read_chunked(self.rfile)
        length = int(self.headers.get("Content-Length") or 0)
        return RequestBody(self.rfile, length) if length > 0 else None

    def send(self, session, prepared, deadline):
        """
        Send `prepared` and return the response, headers read, body not.

        requests only times out single socket operations, so the call runs in
        a worker thread and is given up on at `deadline`. The worker finishes
        on its own and its response, if any, is closed.
        """
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(session.send,
                                 prepared,
                                 stream=True,
                                 timeout=self.config.timeout)
        executor.shutdown(wait=False)
        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0))
        except concurrent.futures.TimeoutError:
            future.add_done_callback(discard)
            raise requests.exceptions.Timeout(
                f"No response within {self.config.timeout:g} seconds") from None

    def relay(self, url, response, headers, deadline):
        headers = dict(headers)
        for name in RESPONSE_HEADERS:
            if name in response.headers:
                headers[name] = response.headers[name]
        if is_cacheable(url):
            headers["Cache-Control"] = CACHE_CONTROL
        self.send_response(response.status_code)
        for name, value in headers.items():
            self.send_header(name, value)
        self.end_headers()
        expired = threading.Event()
        def expire():
            expired.set()
            shutdown_upstream(response)
        timer = threading.Timer(max(deadline - time.monotonic(), 0), expire)
        timer.daemon = True
        timer.start()
        try:
            # Relay raw bytes so that they match Content-Encoding and Content-Length.
            for chunk in response.raw.stream(CHUNK_SIZE, decode_content=False):
                self.wfile.write(chunk)
            if expired.is_set():
                raise TimeoutError(f"Body not read within {self.config.timeout:g} seconds")
        except (OSError, urllib3.exceptions.HTTPError) as error:
            logger.error("Error copying response: %s", error)
            self.close_connection = True
        finally:
            timer.cancel()

    def log_message(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)

class ProxyServer(ThreadingHTTPServer):
    def __init__(self, config, address=None):
        self.config = config
        self.routes = {
            "/health": Handler.handle_health,
            "/proxy": Handler.handle_proxy,
        }
        super().__init__(address or ("", config.port), Handler)

def main():
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    config = Config.from_environ()
    server = ProxyServer(config)
    logger.info("Go Module Graph Proxy starting on :%d", config.port)
    logger.info("Proxy endpoint: http://localhost:%d/proxy?path=<module_path>&proxy=<proxy_url>", config.port)
    logger.info("Default proxy: %s", DEFAULT_PROXY_URL)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()

if __name__ == "__main__":
    main()
