import queue
import socket
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from nodewatch.session import NodeSession, PollOutcome
from nodewatch.sources import FetchError, MetricsClient, poll_node, spawn_poller_threads

METRICS_BODY = (
    "cardano_node_metrics_blockNum_int 10500000\n"
    "cardano_node_metrics_connectedPeers_int 8\n"
)


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        if self.path == "/metrics":
            body = METRICS_BODY.encode("utf-8")
            self.send_response(200)
        elif self.path == "/binary":
            body = b"\xff\xfe\xfa"
            self.send_response(200)
        else:
            body = b"boom"
            self.send_response(500)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        return


class MetricsServerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), _MetricsHandler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.port = self.server.server_address[1]

    def tearDown(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)

    def url(self, path: str) -> str:
        return "http://127.0.0.1:%d%s" % (self.port, path)


class TestMetricsClient(MetricsServerTestCase):
    def test_fetches_body(self) -> None:
        self.assertEqual(MetricsClient(self.url("/metrics"), 2.0).fetch_text(), METRICS_BODY)

    def test_http_error_status(self) -> None:
        with self.assertRaises(FetchError) as ctx:
            MetricsClient(self.url("/missing"), 2.0).fetch_text()
        self.assertIn("HTTP 500", str(ctx.exception))

    def test_non_utf8_body(self) -> None:
        with self.assertRaises(FetchError):
            MetricsClient(self.url("/binary"), 2.0).fetch_text()

    def test_connection_refused(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()
        with self.assertRaises(FetchError):
            MetricsClient("http://127.0.0.1:%d/metrics" % port, 1.0).fetch_text()


class _FakeClient:
    def __init__(self, responses, on_fetch=None) -> None:
        self.responses = list(responses)
        self.on_fetch = on_fetch
        self.calls = 0

    def fetch_text(self) -> str:
        self.calls += 1
        if self.on_fetch is not None:
            self.on_fetch()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _drain(out_queue: "queue.Queue[object]"):
    items = []
    while True:
        try:
            items.append(out_queue.get_nowait())
        except queue.Empty:
            return items


class TestPollNode(unittest.TestCase):
    def run_poller(self, client, stop_event=None, run_once=True):
        session = NodeSession("relay-1")
        out_queue: "queue.Queue[object]" = queue.Queue()
        poll_node(
            session=session,
            client=client,
            out_queue=out_queue,
            stop_event=stop_event or threading.Event(),
            refresh_interval_seconds=0.01,
            run_once=run_once,
        )
        return session, _drain(out_queue)

    def test_run_once_success(self) -> None:
        session, items = self.run_poller(_FakeClient([METRICS_BODY]))
        self.assertEqual(len(items), 2)
        self.assertIsInstance(items[0], PollOutcome)
        self.assertEqual(items[0].record.block_height, 10500000)
        self.assertEqual(items[1], ("relay-1", None))
        self.assertEqual(session.fetch_count, 1)

    def test_run_once_failure(self) -> None:
        session, items = self.run_poller(_FakeClient([FetchError("cannot reach")]))
        self.assertFalse(items[0].record.connected)
        self.assertEqual(items[0].record.last_error, "cannot reach")
        self.assertEqual(session.status_text(), "Connection Error")
        self.assertEqual(items[-1], ("relay-1", None))

    def test_result_after_stop_is_discarded(self) -> None:
        stop_event = threading.Event()
        client = _FakeClient([METRICS_BODY], on_fetch=stop_event.set)
        session, items = self.run_poller(client, stop_event=stop_event, run_once=False)
        self.assertEqual(items, [("relay-1", None)])
        self.assertEqual(session.fetch_count, 0)
        self.assertIsNone(session.metrics.block_height)

    def test_keeps_polling_until_stopped(self) -> None:
        stop_event = threading.Event()
        responses = [METRICS_BODY, FetchError("timed out"), METRICS_BODY]
        client = _FakeClient(responses)
        client.on_fetch = lambda: client.calls >= 3 and stop_event.set()

        session, items = self.run_poller(client, stop_event=stop_event, run_once=False)
        self.assertEqual(client.calls, 3)
        outcomes = [item for item in items if isinstance(item, PollOutcome)]
        self.assertEqual([o.record.connected for o in outcomes], [True, False])
        self.assertEqual(items[-1], ("relay-1", None))


class TestSpawnPollerThreads(MetricsServerTestCase):
    def test_one_thread_per_session(self) -> None:
        sessions = [NodeSession("relay-1"), NodeSession("relay-2")]
        clients = {
            "relay-1": MetricsClient(self.url("/metrics"), 2.0),
            "relay-2": MetricsClient(self.url("/missing"), 2.0),
        }
        out_queue: "queue.Queue[object]" = queue.Queue()
        started = spawn_poller_threads(
            sessions=sessions,
            clients=clients,
            out_queue=out_queue,
            stop_event=threading.Event(),
            refresh_interval_seconds=0.01,
            run_once=True,
        )
        self.assertEqual(started, 2)

        items = [out_queue.get(timeout=5) for _ in range(4)]
        outcomes = {item.node_name: item for item in items if isinstance(item, PollOutcome)}
        sentinels = [item for item in items if not isinstance(item, PollOutcome)]
        self.assertEqual(sorted(sentinels), [("relay-1", None), ("relay-2", None)])
        self.assertTrue(outcomes["relay-1"].record.connected)
        self.assertFalse(outcomes["relay-2"].record.connected)


if __name__ == "__main__":
    unittest.main()
