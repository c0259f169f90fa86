import unittest
import threading
import tempfile
import time
import requests
import json
import logging
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from pathlib import Path
import sys
import os
import socket
from unittest import mock

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devproxy.__main__ import main
from devproxy.config import ProxyConfig
from devproxy.server import ProxyServer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CORS_HEADERS = ProxyConfig().cors_headers
INDEX_HTML = b"<!doctype html><html><body>app</body></html>"
WAIT_SECONDS = 0.4
WAIT_STARTED = threading.Event()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def raw_request(port: int, data: bytes) -> bytes:
    """Send raw bytes to the proxy and read until it closes the connection."""
    with socket.create_connection(('127.0.0.1', port), timeout=5) as s:
        s.sendall(data)
        response = bytearray()
        while True:
            chunk = s.recv(4096)
            if not chunk:
                break
            response.extend(chunk)
    return bytes(response)


class TestBackendHandler(BaseHTTPRequestHandler):
    """Simple HTTP handler for testing backend server."""

    def do_GET(self):
        """Handle GET requests."""
        if self.path == "/health":
            self._send_json_response(200, {"status": "ok"})
        elif self.path == "/api/test":
            self._send_json_response(200, {
                "message": "Hello from backend!",
                "path": self.path,
                "headers": dict(self.headers)
            })
        elif self.path == "/api/slow":
            time.sleep(1.5)
            self._send_json_response(200, {"message": "too late"})
        elif self.path == "/api/wait":
            WAIT_STARTED.set()
            time.sleep(WAIT_SECONDS)
            self._send_json_response(200, {"message": "waited"})
        elif self.path == "/status":
            body = b"maintenance"
            self.send_response(503)
            self.send_header('Content-Type', 'text/plain')
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        else:
            self._send_json_response(404, {"error": "Not found"})

    def do_POST(self):
        """Handle POST requests."""
        content_length = int(self.headers.get('Content-Length', 0))
        post_data = self.rfile.read(content_length) if content_length > 0 else b''

        if self.path == "/download-tool":
            self._send_json_response(200, {"installed": "real", "data": json.loads(post_data)})
        elif self.path == "/download-tool/broken":
            self._send_json_response(503, {"error": "exploded"})
        else:
            self._send_json_response(200, {
                "message": "Received POST request",
                "path": self.path,
                "data": json.loads(post_data.decode('utf-8')) if post_data else {},
                "headers": dict(self.headers)
            })

    def _send_json_response(self, status_code: int, data: dict):
        """Send JSON response with proper headers."""
        response_data = json.dumps(data).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Access-Control-Allow-Origin', 'http://backend.local')
        self.send_header('Content-Length', str(len(response_data)))
        self.end_headers()
        try:
            self.wfile.write(response_data)
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.info(f"Client went away: {e}")

    def log_message(self, format, *args):
        """Override to use our logger."""
        logger.info(f"{self.address_string()} - {format%args}")


class ProxyTestCase(unittest.TestCase):
    """Starts a ProxyServer in a background thread for the test class."""

    backend_port = None
    with_index = True
    timeout = 0.5
    max_connections = None

    @classmethod
    def setUpClass(cls):
        """Set up test environment once before all tests."""
        logger.info("Starting test setup...")

        cls.static_dir = tempfile.TemporaryDirectory()
        root = Path(cls.static_dir.name)
        if cls.with_index:
            (root / "index.html").write_bytes(INDEX_HTML)
        (root / "app.js").write_bytes(b"console.log('app');")
        (root / "logo.svg").write_bytes(b"<svg/>")

        cls.proxy_port = free_port()
        cls.proxy = ProxyServer(ProxyConfig(
            host="127.0.0.1",
            port=cls.proxy_port,
            backend_host="127.0.0.1",
            backend_port=cls.backend_port or free_port(),
            static_root=str(root),
            timeout=cls.timeout,
            health_timeout=1,
            max_connections=cls.max_connections
        ))
        cls.proxy_thread = threading.Thread(target=cls.proxy.start)
        cls.proxy_thread.daemon = True
        cls.proxy_thread.start()
        if not cls.proxy.ready.wait(timeout=10):
            raise RuntimeError("Proxy server did not start")
        logger.info("Proxy server started")

    @classmethod
    def tearDownClass(cls):
        """Clean up after all tests."""
        logger.info("Shutting down proxy server...")
        cls.proxy.shutdown()
        cls.proxy_thread.join(timeout=5)
        cls.static_dir.cleanup()

    def url(self, path: str) -> str:
        return f"http://127.0.0.1:{self.proxy_port}{path}"

    def assert_cors(self, response):
        for name, value in CORS_HEADERS.items():
            self.assertEqual(response.headers.get(name), value)


class LiveBackendTestCase(ProxyTestCase):
    """Runs TestBackendHandler in a thread alongside the proxy."""

    @classmethod
    def setUpClass(cls):
        # Start backend server
        cls.backend_server = ThreadingHTTPServer(('127.0.0.1', 0), TestBackendHandler)
        cls.backend_server.daemon_threads = True
        cls.backend_port = cls.backend_server.server_address[1]
        cls.backend_thread = threading.Thread(target=cls.backend_server.serve_forever)
        cls.backend_thread.daemon = True
        cls.backend_thread.start()
        logger.info("Backend server started")
        super().setUpClass()

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        logger.info("Shutting down backend server...")
        cls.backend_server.shutdown()
        cls.backend_server.server_close()
        cls.backend_thread.join(timeout=5)


class TestProxyIntegration(LiveBackendTestCase):
    """Integration tests with a live backend."""

    def test_backend_marked_alive_at_startup(self):
        """Test that the startup probe seeds liveness."""
        self.assertTrue(self.proxy.liveness.alive)

    def test_get_request_through_proxy(self):
        """Test GET request through proxy to backend server."""
        # Act
        response = requests.get(self.url("/api/test"), timeout=5)
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["message"], "Hello from backend!")
        self.assertEqual(data["path"], "/api/test")
        self.assertEqual(data["headers"]["Host"], f"127.0.0.1:{self.backend_port}")
        self.assert_cors(response)
        logger.info(f"[PASSED] test_get_request_through_proxy")

    def test_post_request_through_proxy(self):
        """Test POST request through proxy to backend server."""
        # Arrange
        post_data = {"key": "value", "test": 123, "large_field": "x" * 5000}

        # Act
        response = requests.post(self.url("/api/echo"), json=post_data, timeout=5)
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["message"], "Received POST request")
        self.assertEqual(data["data"], post_data)
        self.assert_cors(response)
        logger.info(f"[PASSED] test_post_request_through_proxy")

    def test_backend_404_passed_through(self):
        """Test request to non-existent backend endpoint."""
        # Act
        response = requests.get(self.url("/api/nonexistent"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "Not found")
        self.assert_cors(response)

    def test_non_sensitive_503_passed_through(self):
        """Test that a 503 from /status reaches the caller unchanged."""
        # Act
        response = requests.get(self.url("/status"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.content, b"maintenance")
        self.assert_cors(response)

    def test_download_tool_through_backend(self):
        """Test that a healthy backend answers download-tool itself."""
        # Act
        response = requests.post(self.url("/download-tool"), json={"toolName": "foo"}, timeout=5)

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"installed": "real", "data": {"toolName": "foo"}})
        self.assert_cors(response)

    def test_download_tool_5xx_replaced_by_mock(self):
        """Test that a backend 503 on download-tool becomes the mock response."""
        # Act
        response = requests.post(
            self.url("/download-tool/broken"),
            json={"toolName": "foo", "action": "upgrade"},
            timeout=5
        )
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertTrue(data["success"])
        self.assertEqual(data["message"], "Mock installation of foo completed")
        self.assertEqual(data["details"]["action"], "upgrade")
        self.assert_cors(response)

    def test_backend_timeout_returns_504(self):
        """Test a 504 when the backend is slower than the configured timeout."""
        # Act
        response = requests.get(self.url("/api/slow"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 504)
        self.assertEqual(response.json(), {"error": "Backend timeout"})
        self.assert_cors(response)

    def test_preflight(self):
        """Test that OPTIONS returns 200, CORS headers and no body on any path."""
        for path in ("/api/test", "/download-tool", "/whatever"):
            # Act
            response = requests.options(self.url(path), timeout=5)

            # Assert
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.content, b"")
            self.assert_cors(response)

    def test_index_served(self):
        """Test that / serves index.html byte for byte."""
        # Act
        response = requests.get(self.url("/"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Content-Type"], "text/html")
        self.assertEqual(response.content, INDEX_HTML)
        self.assert_cors(response)

    def test_head_request(self):
        """Test that HEAD returns the index headers without a body."""
        # Act
        response = requests.head(self.url("/"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Content-Length"], str(len(INDEX_HTML)))
        self.assertEqual(response.content, b"")
        self.assert_cors(response)

    def test_static_file_mime_types(self):
        """Test MIME types for static assets."""
        # Act
        script = requests.get(self.url("/app.js"), timeout=5)
        logo = requests.get(self.url("/logo.svg"), timeout=5)

        # Assert
        self.assertEqual(script.headers["Content-Type"], "application/javascript")
        self.assertEqual(script.content, b"console.log('app');")
        self.assertEqual(logo.headers["Content-Type"], "image/svg+xml")

    def test_spa_fallback(self):
        """Test that client-side routes receive the index page."""
        # Act
        response = requests.get(self.url("/settings/profile"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, INDEX_HTML)

    def test_path_traversal_refused(self):
        """Test that parent-directory segments cannot escape the static root."""
        # Act
        response = raw_request(
            self.proxy_port,
            b"GET /../../../etc/passwd HTTP/1.1\r\nHost: localhost\r\n\r\n"
        )

        # Assert
        self.assertTrue(response.startswith(b"HTTP/1.1 404 Not Found"))
        self.assertTrue(response.endswith(b"\r\n\r\nNot Found"))

    def test_malformed_request(self):
        """Test a 400 for an unparsable request line."""
        # Act
        response = raw_request(self.proxy_port, b"HELLO\r\n\r\n")

        # Assert
        self.assertTrue(response.startswith(b"HTTP/1.1 400 Bad Request"))

    def test_chunked_request_body(self):
        """Test that a chunked request body is buffered and forwarded with Content-Length."""
        # Act
        response = requests.post(
            self.url("/api/echo"),
            data=iter([b'{"a": ', b'1}']),
            headers={"Content-Type": "application/json"},
            timeout=5
        )
        data = response.json()

        # Assert
        self.assertEqual(data["data"], {"a": 1})
        self.assertEqual(data["headers"]["Content-Length"], "8")

    def test_multiple_concurrent_requests(self):
        """Test handling multiple concurrent requests."""
        # Arrange
        def make_request():
            try:
                response = requests.get(self.url("/api/test"), timeout=30)
                return response.status_code
            except Exception as e:
                logger.error(f"Concurrent request failed: {e}")
                return None

        # Act
        num_requests = 5
        threads = []
        results = []
        for _ in range(num_requests):
            thread = threading.Thread(
                target=lambda: results.append(make_request())
            )
            threads.append(thread)
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        # Assert
        self.assertEqual(results, [200] * num_requests)
        logger.info(f"[PASSED] test_multiple_concurrent_requests")


class TestProxyBackendDown(ProxyTestCase):
    """Integration tests with nothing listening on the backend port."""

    with_index = False

    def test_backend_marked_down_at_startup(self):
        """Test that a failed startup probe does not stop the server."""
        self.assertFalse(self.proxy.liveness.alive)

    def test_download_tool_mock(self):
        """Test the mock response for download-tool when the backend is down."""
        # Act
        response = requests.post(
            self.url("/download-tool"),
            json={"toolName": "foo", "action": "upgrade"},
            timeout=5
        )
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Content-Type"], "application/json")
        self.assertTrue(data["success"])
        self.assertEqual(data["message"], "Mock installation of foo completed")
        self.assertEqual(data["status"], "installed")
        self.assertEqual(data["details"]["tool"], "foo")
        self.assertEqual(data["details"]["action"], "upgrade")
        self.assertEqual(data["details"]["note"], "Backend unavailable - using mock response")
        self.assert_cors(response)

    def test_download_tool_invalid_json(self):
        """Test a 400 for malformed JSON on the mock path."""
        # Act
        response = requests.post(
            self.url("/download-tool"),
            data=b"not-json",
            headers={"Content-Type": "application/json"},
            timeout=5
        )

        # Assert
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Invalid JSON in request")
        self.assert_cors(response)

    def test_non_sensitive_returns_502(self):
        """Test a 502 JSON error for other proxied paths."""
        # Act
        response = requests.get(self.url("/api/test"), timeout=5)
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 502)
        self.assertEqual(data["error"], "Backend connection failed")
        self.assertIn("details", data)
        self.assert_cors(response)

    def test_missing_file_without_index(self):
        """Test a plain-text 404 when neither the file nor index.html exists."""
        # Act
        response = requests.get(self.url("/nonexistent.png"), timeout=5)

        # Assert
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.headers["Content-Type"], "text/plain")
        self.assertEqual(response.text, "Not Found")
        self.assert_cors(response)


class TestConnectionLimit(LiveBackendTestCase):
    """Integration tests with max_connections capping concurrent requests."""

    max_connections = 1
    timeout = 5

    def test_requests_beyond_limit_wait_their_turn(self):
        """Test that requests over the cap are queued and all succeed."""
        # Arrange
        num_requests = 3
        results = []

        def make_request():
            results.append(requests.get(self.url("/api/wait"), timeout=30).status_code)

        threads = [threading.Thread(target=make_request) for _ in range(num_requests)]
        started = time.monotonic()

        # Act
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        elapsed = time.monotonic() - started

        # Assert
        self.assertEqual(results, [200] * num_requests)
        self.assertGreaterEqual(elapsed, WAIT_SECONDS * num_requests * 0.9)


class RecordingProxyServer(ProxyServer):
    """ProxyServer that remembers every instance so tests can stop it."""

    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        RecordingProxyServer.instances.append(self)


class TestGracefulShutdown(unittest.TestCase):
    """Shutdown while serving: drain in-flight requests, refuse new ones."""

    def setUp(self):
        self.backend_server = ThreadingHTTPServer(('127.0.0.1', 0), TestBackendHandler)
        self.backend_server.daemon_threads = True
        backend_thread = threading.Thread(target=self.backend_server.serve_forever)
        backend_thread.daemon = True
        backend_thread.start()
        self.addCleanup(backend_thread.join, 5)
        self.addCleanup(self.backend_server.server_close)
        self.addCleanup(self.backend_server.shutdown)

        self.static_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.static_dir.cleanup)
        (Path(self.static_dir.name) / "index.html").write_bytes(INDEX_HTML)
        self.proxy_port = free_port()

    def config_args(self) -> list:
        return [
            "--host", "127.0.0.1",
            "--port", str(self.proxy_port),
            "--backend-host", "127.0.0.1",
            "--backend-port", str(self.backend_server.server_address[1]),
            "--static-root", self.static_dir.name,
            "--timeout", "5"
        ]

    def test_in_flight_request_completes(self):
        """Test that shutdown lets a running request finish and refuses new connections."""
        # Arrange
        proxy = ProxyServer(ProxyConfig(
            host="127.0.0.1",
            port=self.proxy_port,
            backend_host="127.0.0.1",
            backend_port=self.backend_server.server_address[1],
            static_root=self.static_dir.name,
            timeout=5,
            health_timeout=1
        ))
        serve_thread = threading.Thread(target=proxy.start)
        serve_thread.daemon = True
        serve_thread.start()
        self.assertTrue(proxy.ready.wait(timeout=10))

        responses = []
        client = threading.Thread(
            target=lambda: responses.append(
                requests.get(f"http://127.0.0.1:{self.proxy_port}/api/wait", timeout=10)
            )
        )
        WAIT_STARTED.clear()
        client.start()
        self.assertTrue(WAIT_STARTED.wait(timeout=5))

        # Act
        proxy.shutdown()
        refused = False
        deadline = time.monotonic() + WAIT_SECONDS / 2
        while time.monotonic() < deadline:
            try:
                socket.create_connection(('127.0.0.1', self.proxy_port), timeout=1).close()
            except OSError:
                refused = True
                break
            time.sleep(0.01)
        still_running = client.is_alive()
        client.join(timeout=10)
        serve_thread.join(timeout=10)

        # Assert
        self.assertTrue(refused)
        self.assertTrue(still_running)
        self.assertEqual(len(responses), 1)
        self.assertEqual(responses[0].status_code, 200)
        self.assertEqual(responses[0].json(), {"message": "waited"})
        self.assertFalse(serve_thread.is_alive())

    def test_main_returns_zero_after_shutdown(self):
        """Test that the command line entry point exits cleanly once stopped."""
        # Arrange
        exit_codes = []
        RecordingProxyServer.instances.clear()

        # Act
        with mock.patch('devproxy.__main__.ProxyServer', RecordingProxyServer):
            runner = threading.Thread(target=lambda: exit_codes.append(main(self.config_args())))
            runner.daemon = True
            runner.start()
            deadline = time.monotonic() + 10
            while not RecordingProxyServer.instances and time.monotonic() < deadline:
                time.sleep(0.01)
            proxy = RecordingProxyServer.instances[0]
            self.assertTrue(proxy.ready.wait(timeout=10))
            threading.Timer(0.1, proxy.shutdown).start()
            runner.join(timeout=10)

        # Assert
        self.assertFalse(runner.is_alive())
        self.assertEqual(exit_codes, [0])


if __name__ == '__main__':
    unittest.main(verbosity=2)
