import http.client
import queue
import threading
import urllib.error
import urllib.request
from typing import Dict, List

from .session import NodeSession


class FetchError(Exception):
    pass


class MetricsClient:
    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout

    def fetch_text(self) -> str:
        request = urllib.request.Request(self.url, headers={"Accept": "text/plain"})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise FetchError("HTTP %d from %s" % (exc.code, self.url)) from exc
        except urllib.error.URLError as exc:
            raise FetchError("cannot reach %s: %s" % (self.url, exc.reason)) from exc
        except (OSError, http.client.HTTPException, ValueError) as exc:
            raise FetchError("request to %s failed: %s" % (self.url, exc)) from exc
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FetchError("metrics body from %s is not UTF-8" % self.url) from exc


def poll_node(
    *,
    session: NodeSession,
    client: MetricsClient,
    out_queue: "queue.Queue[object]",
    stop_event: threading.Event,
    refresh_interval_seconds: float,
    run_once: bool,
) -> None:
    while not stop_event.is_set():
        try:
            text = client.fetch_text()
        except FetchError as exc:
            if stop_event.is_set():
                break
            out_queue.put(session.process_failure(str(exc)))
        else:
            # A fetch that straddled shutdown is dropped, never half-applied.
            if stop_event.is_set():
                break
            out_queue.put(session.process(text))

        if run_once:
            break
        stop_event.wait(refresh_interval_seconds)

    out_queue.put((session.node_name, None))


def spawn_poller_threads(
    *,
    sessions: List[NodeSession],
    clients: Dict[str, MetricsClient],
    out_queue: "queue.Queue[object]",
    stop_event: threading.Event,
    refresh_interval_seconds: float,
    run_once: bool,
) -> int:
    started = 0
    for session in sessions:
        thread = threading.Thread(
            target=poll_node,
            name="poll-%s" % session.node_name,
            kwargs={
                "session": session,
                "client": clients[session.node_name],
                "out_queue": out_queue,
                "stop_event": stop_event,
                "refresh_interval_seconds": refresh_interval_seconds,
                "run_once": run_once,
            },
            daemon=True,
        )
        thread.start()
        started += 1
    return started
