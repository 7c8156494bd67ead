"""
Brief: Global pytest configuration: src/ on sys.path, per-test 10s timeout,
and shared fakes for upstream exchanges and transports.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import socket
import sys
import threading
import time

import pytest
from dnslib import QTYPE, RR, A, DNSRecord

# Ensure 'src' is on sys.path so 'relaydns' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from relaydns.exchange import ExchangeExhausted  # noqa: E402
from relaydns.transports.udp import TransportTimeout  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        # Fallback: no-op on platforms without SIGALRM
        yield


def make_answer(query: DNSRecord, ip: str = "93.184.216.34", ttl: int = 60) -> bytes:
    """Build an upstream-style reply to query with a single A record."""
    reply = query.reply()
    reply.add_answer(RR(str(query.q.qname), QTYPE.A, rdata=A(ip), ttl=ttl))
    return reply.pack()


class FakeEngine:
    """Exchange engine double that records calls instead of touching the network.

    Inputs:
      - delays: optional {qname: seconds} to sleep before answering.
      - answers: optional {qname: ip}; defaults to 93.184.216.34.
      - fail: when True every exchange raises ExchangeExhausted.
    """

    def __init__(self, delays=None, answers=None, fail=False):
        self.delays = dict(delays or {})
        self.answers = dict(answers or {})
        self.fail = fail
        self.calls = []
        self.finished = {}
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.calls)

    def exchange(self, query: DNSRecord) -> bytes:
        name = str(query.q.qname)
        with self._lock:
            self.calls.append(name)
        time.sleep(self.delays.get(name, 0.0))
        with self._lock:
            self.finished[name] = time.monotonic()
        if self.fail:
            raise ExchangeExhausted(3, 0.01)
        return make_answer(query, self.answers.get(name, "93.184.216.34"))


class ScriptedTransport:
    """Transport double: records sends and replays scripted receive results.

    Each script entry is a callable taking the list of sent datagrams and
    returning bytes, or an exception instance to raise. When the script is
    exhausted, receive_with_deadline sleeps until the deadline and raises
    TransportTimeout, like a silent upstream.
    """

    def __init__(self, script=None):
        self.sent = []
        self.script = list(script or [])
        self.closed = False

    def send(self, data: bytes) -> None:
        self.sent.append(bytes(data))

    def receive_with_deadline(self, deadline: float) -> bytes:
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step(self.sent)
        remaining = deadline - time.monotonic()
        if remaining > 0:
            time.sleep(remaining)
        raise TransportTimeout("scripted silence")

    def close(self) -> None:
        self.closed = True


class DNSStubUpstream:
    """Local UDP upstream that answers every A query with a fixed address.

    Inputs:
      - ip: address placed in every answer.
      - drop_first: number of initial queries to ignore (simulated loss).
    """

    def __init__(self, ip="93.184.216.34", drop_first=0):
        self.ip = ip
        self.drop_first = drop_first
        self.queries = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.addr = self.sock.getsockname()
        self._stop = False
        self.thread = threading.Thread(target=self._loop, daemon=True)

    def start(self):
        self.thread.start()
        return self

    def _loop(self):
        while not self._stop:
            try:
                self.sock.settimeout(0.2)
                data, peer = self.sock.recvfrom(4096)
            except OSError:
                continue
            self.queries.append(data)
            if len(self.queries) <= self.drop_first:
                continue
            try:
                self.sock.sendto(make_answer(DNSRecord.parse(data), self.ip), peer)
            except Exception:
                pass

    def close(self):
        self._stop = True
        self.thread.join(timeout=1.0)
        self.sock.close()


@pytest.fixture
def fake_engine_cls():
    return FakeEngine


@pytest.fixture
def scripted_transport_cls():
    return ScriptedTransport


@pytest.fixture
def answer_for():
    return make_answer


@pytest.fixture
def dns_upstream():
    stub = DNSStubUpstream().start()
    try:
        yield stub
    finally:
        stub.close()
