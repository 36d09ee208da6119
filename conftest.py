import socket
import threading

import pytest

from proxy_config import ProxyConfig, UpstreamConfig
from proxy_server import ProxyServer
from proxy_testing import EchoServer
from socks5_stub import Socks5Server


@pytest.fixture
def echo_server():
    server = EchoServer()
    yield server
    server.stop()


@pytest.fixture
def socks_stub():
    started = []

    def make(**kwargs):
        stub = Socks5Server('127.0.0.1', 0, **kwargs)
        threading.Thread(target=stub.start, daemon=True).start()
        assert stub.ready.wait(5)
        started.append(stub)
        return stub

    yield make
    for stub in started:
        stub.stop()


@pytest.fixture
def make_config():
    def make(upstream_port, credentials=None, **kwargs):
        kwargs.setdefault('connect_timeout', 5.0)
        kwargs.setdefault('header_timeout', 5.0)
        return ProxyConfig(
            listen_host='127.0.0.1',
            listen_port=0,
            upstream=UpstreamConfig('127.0.0.1', upstream_port, credentials),
            **kwargs,
        )

    return make


@pytest.fixture
def running_proxy():
    started = []

    def make(config, logger=None):
        server = ProxyServer(config, logger=logger)
        t = threading.Thread(target=server.start, daemon=True)
        t.start()
        assert server.ready.wait(5)
        assert server.running
        started.append((server, t))
        return server

    yield make
    for server, t in started:
        server.stop()
        t.join(5)


@pytest.fixture
def client_socket():
    opened = []

    def make(server):
        s = socket.create_connection(('127.0.0.1', server.local_port), timeout=5)
        opened.append(s)
        return s

    yield make
    for s in opened:
        s.close()
