import socket
import threading

# Minimal SOCKS5 server supporting NO AUTH, USERNAME/PASSWORD and CONNECT.
# Designed for local testing only (not production-grade).

SUCCEEDED = 0x00
GENERAL_FAILURE = 0x01
HOST_UNREACHABLE = 0x04
CONNECTION_REFUSED = 0x05
COMMAND_NOT_SUPPORTED = 0x07


def _recv_exact(conn, n):
    data = b''
    while len(data) < n:
        chunk = conn.recv(n - len(data))
        if not chunk:
            raise ConnectionError('client closed during handshake')
        data += chunk
    return data


def _reply(conn, code):
    # bind addr/port set to zeros
    conn.sendall(bytes([0x05, code, 0x00, 0x01, 0, 0, 0, 0, 0, 0]))


class Socks5Server:
    """测试用 SOCKS5 上游。

    username/password 设置后强制用户名/密码认证；reply 非零时对 CONNECT 返回该
    应答码；forward_to 设置后无论请求的目标是什么都连接到该地址（便于在本机
    测试公网 IP 目标）；stall=N 时前 N 个连接只被接受、永不应答，直到 stop()。
    每个连接的问候方法和 CONNECT 目标都会被记录。
    """

    def __init__(self, host='localhost', port=0, username=None, password=None,
                 reply=SUCCEEDED, forward_to=None, stall=0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.reply = reply
        self.forward_to = forward_to
        self.stall = stall
        self.greetings = []
        self.requests = []
        self.stalled = 0
        self.ready = threading.Event()
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._running = False
        self._sock = None

    def start(self):
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((self.host, self.port))
        self.port = self._sock.getsockname()[1]
        self._sock.listen(32)
        self._running = True
        self.ready.set()
        while self._running:
            try:
                client, addr = self._sock.accept()
                t = threading.Thread(target=self.handle_client, args=(client,), daemon=True)
                t.start()
            except Exception:
                break

    def stop(self):
        self._running = False
        self._stopped.set()
        try:
            self._sock.close()
        except Exception:
            pass

    def _hold(self):
        # the first `stall` connections get no greeting reply until stop()
        with self._lock:
            if self.stall <= 0:
                return False
            self.stall -= 1
            self.stalled += 1
        self._stopped.wait()
        return True

    def _negotiate_method(self, conn):
        ver, nmethods = _recv_exact(conn, 2)
        methods = _recv_exact(conn, nmethods)
        self.greetings.append(bytes(methods))
        if ver != 0x05:
            return False

        if self.username is None:
            if 0x00 not in methods:
                conn.sendall(b'\x05\xff')
                return False
            conn.sendall(b'\x05\x00')
            return True

        if 0x02 not in methods:
            # no acceptable methods
            conn.sendall(b'\x05\xff')
            return False
        conn.sendall(b'\x05\x02')

        # RFC 1929 sub-negotiation
        _ver, ulen = _recv_exact(conn, 2)
        uname = _recv_exact(conn, ulen).decode('utf-8')
        plen = _recv_exact(conn, 1)[0]
        passwd = _recv_exact(conn, plen).decode('utf-8')
        if uname != self.username or passwd != self.password:
            conn.sendall(b'\x01\x01')
            return False
        conn.sendall(b'\x01\x00')
        return True

    def handle_client(self, conn):
        remote = None
        try:
            if self._hold():
                return
            if not self._negotiate_method(conn):
                return

            # request
            ver, cmd, rsv, atyp = _recv_exact(conn, 4)
            if ver != 0x05:
                return
            if cmd != 0x01:
                # only support CONNECT
                _reply(conn, COMMAND_NOT_SUPPORTED)
                return

            if atyp == 0x01:
                dest_addr = socket.inet_ntoa(_recv_exact(conn, 4))
            elif atyp == 0x03:
                length = _recv_exact(conn, 1)[0]
                dest_addr = _recv_exact(conn, length).decode('utf-8')
            elif atyp == 0x04:
                dest_addr = socket.inet_ntop(socket.AF_INET6, _recv_exact(conn, 16))
            else:
                return
            dest_port = int.from_bytes(_recv_exact(conn, 2), 'big')
            self.requests.append((dest_addr, dest_port))

            if self.reply != SUCCEEDED:
                _reply(conn, self.reply)
                return

            try:
                remote = socket.create_connection(self.forward_to or (dest_addr, dest_port), timeout=5.0)
                remote.settimeout(None)
            except OSError:
                _reply(conn, HOST_UNREACHABLE)
                return

            _reply(conn, SUCCEEDED)

            # relay; EOF is passed on as a half-close
            def relay(src, dst):
                try:
                    while True:
                        data = src.recv(4096)
                        if not data:
                            break
                        dst.sendall(data)
                except OSError:
                    pass
                finally:
                    try:
                        dst.shutdown(socket.SHUT_WR)
                    except OSError:
                        pass

            t1 = threading.Thread(target=relay, args=(conn, remote), daemon=True)
            t2 = threading.Thread(target=relay, args=(remote, conn), daemon=True)
            t1.start()
            t2.start()
            t1.join()
            t2.join()
        except Exception:
            pass
        finally:
            for s in (remote, conn):
                if s is None:
                    continue
                try:
                    s.close()
                except Exception:
                    pass


if __name__ == '__main__':
    s = Socks5Server('localhost', 1080)
    try:
        s.start()
    except KeyboardInterrupt:
        s.stop()
