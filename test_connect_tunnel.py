import socket
import time

from proxy_testing import EOF_MARK, closed_port, read_head, recv_until_eof
from proxy_config import Credentials

ESTABLISHED = b'HTTP/1.1 200 Connection Established'


def open_tunnel(sock, authority=b'93.184.216.34:443'):
    sock.sendall(b'CONNECT %s HTTP/1.1\r\nHost: %s\r\n\r\n' % (authority, authority))
    return read_head(sock)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_connect_host_name_is_rejected(socks_stub, make_config, running_proxy, client_socket):
    stub = socks_stub()
    server = running_proxy(make_config(stub.port))
    s = client_socket(server)

    head, body = open_tunnel(s, b'example.org:443')
    assert head.startswith(b'HTTP/1.1 400 Bad Request')
    assert body + recv_until_eof(s) == b'CONNECT must be to a socket address'
    assert server.tunnels.active == 0
    assert stub.greetings == []


def test_connect_relays_through_socks_upstream(socks_stub, echo_server, make_config,
                                               running_proxy, client_socket):
    stub = socks_stub(forward_to=echo_server.address)
    server = running_proxy(make_config(stub.port))
    s = client_socket(server)

    head, rest = open_tunnel(s)
    assert head == ESTABLISHED
    assert rest == b''

    s.sendall(b'\x16\x03\x01 not really tls')
    s.shutdown(socket.SHUT_WR)
    assert recv_until_eof(s) == b'\x16\x03\x01 not really tls' + EOF_MARK

    assert stub.greetings == [b'\x00']
    assert stub.requests == [('93.184.216.34', 443)]


def test_connect_with_credentials(socks_stub, echo_server, make_config, running_proxy, client_socket):
    stub = socks_stub(username='alice', password='secret', forward_to=echo_server.address)
    server = running_proxy(make_config(stub.port, Credentials('alice', 'secret')))
    s = client_socket(server)

    head, _ = open_tunnel(s, b'[::1]:8443')
    assert head == ESTABLISHED
    s.sendall(b'authenticated')
    s.shutdown(socket.SHUT_WR)
    assert recv_until_eof(s) == b'authenticated' + EOF_MARK

    assert stub.greetings == [b'\x00\x02']
    assert stub.requests == [('::1', 8443)]


def test_half_close_through_proxy(socks_stub, echo_server, make_config, running_proxy, client_socket):
    stub = socks_stub(forward_to=echo_server.address)
    server = running_proxy(make_config(stub.port))
    s = client_socket(server)

    open_tunnel(s)
    s.sendall(b'ping')
    assert s.recv(4) == b'ping'
    # client is done sending; the echo's trailing mark must still arrive
    s.shutdown(socket.SHUT_WR)
    assert recv_until_eof(s) == EOF_MARK


def test_concurrent_tunnels_are_independent(socks_stub, echo_server, make_config,
                                            running_proxy, client_socket):
    stub = socks_stub(forward_to=echo_server.address)
    server = running_proxy(make_config(stub.port))
    first, second = client_socket(server), client_socket(server)

    open_tunnel(first, b'10.0.0.1:443')
    open_tunnel(second, b'10.0.0.2:443')
    second.sendall(b'second')
    first.sendall(b'first')
    assert second.recv(6) == b'second'
    assert first.recv(5) == b'first'

    first.shutdown(socket.SHUT_WR)
    assert recv_until_eof(first) == EOF_MARK
    # closing one tunnel leaves the other usable
    second.sendall(b' again')
    assert second.recv(6) == b' again'
    assert sorted(stub.requests) == [('10.0.0.1', 443), ('10.0.0.2', 443)]


def test_rejected_credentials_close_tunnel(socks_stub, make_config, running_proxy, client_socket):
    stub = socks_stub(username='alice', password='secret')
    messages = []
    server = running_proxy(make_config(stub.port, Credentials('alice', 'wrong')), logger=messages.append)
    s = client_socket(server)

    head, _ = open_tunnel(s)
    # success is sent before the upstream is known to work
    assert head == ESTABLISHED
    assert recv_until_eof(s) == b''
    assert wait_for(lambda: any('AuthError' in m for m in messages))
    assert stub.requests == []


def test_unreachable_upstream_closes_tunnel(make_config, running_proxy, client_socket):
    messages = []
    server = running_proxy(make_config(closed_port()), logger=messages.append)
    s = client_socket(server)

    head, _ = open_tunnel(s)
    assert head == ESTABLISHED
    assert recv_until_eof(s) == b''
    assert wait_for(lambda: any('DialError' in m for m in messages))
    assert wait_for(lambda: server.tunnels.active == 0)


def test_stalled_upstream_handshakes_do_not_delay_other_tunnels(socks_stub, echo_server, make_config,
                                                                running_proxy, client_socket):
    stub = socks_stub(stall=8, forward_to=echo_server.address)
    server = running_proxy(make_config(stub.port, connect_timeout=3.0))

    stalled = [client_socket(server) for _ in range(8)]
    for i, s in enumerate(stalled):
        assert open_tunnel(s, b'10.0.0.%d:443' % (i + 1))[0] == ESTABLISHED
    assert wait_for(lambda: stub.stalled == 8)

    healthy = client_socket(server)
    started = time.monotonic()
    assert open_tunnel(healthy)[0] == ESTABLISHED
    healthy.sendall(b'not stuck')
    assert healthy.recv(9) == b'not stuck'
    assert time.monotonic() - started < 1.0
    assert server.tunnels.active == 9
