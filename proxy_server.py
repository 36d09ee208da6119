import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

from proxy_errors import ForwardError, TargetParseError
from tunnel import CHUNK_SIZE, TunnelManager, parse_tunnel_target

HEADER_END = b'\r\n\r\n'

_REASONS = {
    400: 'Bad Request',
    502: 'Bad Gateway',
}


@dataclass
class HttpRequest:
    method: str
    target: str
    version: str
    header_lines: List[str] = field(default_factory=list)

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for line in self.header_lines:
            key, sep, value = line.partition(':')
            if sep and key.strip().lower() == name:
                return value.strip()
        return None


def parse_request_head(head: bytes) -> HttpRequest:
    """解析请求头（请求行 + 头部），格式错误时抛出 ValueError"""
    text = head.decode('iso-8859-1')
    lines = text.split('\r\n')
    parts = lines[0].split()
    if len(parts) != 3:
        raise ValueError(f"Malformed request line: {lines[0]!r}")
    method, target, version = parts
    return HttpRequest(method.upper(), target, version, [l for l in lines[1:] if l])


def _check_origin_port(port):
    if port == 0:
        raise ValueError("Invalid origin port: 0")


class ProxyServer:
    """HTTP 代理：CONNECT 经上游 SOCKS5 建立隧道，其余请求直接转发给源站"""

    def __init__(self, config, logger=None, log_level=None, connector=None):
        self.config = config
        # logger may be a callable sink (tests, embedding); stdlib logging is always used
        self.logger = logger
        self._logger = logging.getLogger('ProxyServer')
        if log_level is not None:
            self._logger.setLevel(log_level)

        self.tunnels = TunnelManager(config, connector=connector, logger=logger)
        self.running = False
        # set once the listener is bound, so threads can read local_port
        self.ready = threading.Event()
        self.local_host = None
        self.local_port = None
        self._server = None
        self._loop = None
        self._stop_event = None

    def _log(self, message: str, level=logging.INFO):
        self._logger.log(level, message)
        if self.logger:
            try:
                self.logger(message)
            except Exception:
                pass

    async def serve(self):
        """绑定监听地址并处理连接，直到 stop() 被调用"""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._server = await asyncio.start_server(
            self.handle_client, self.config.listen_host, self.config.listen_port)
        sockname = self._server.sockets[0].getsockname()
        self.local_host, self.local_port = sockname[0], sockname[1]
        self.running = True
        self._log(f"Listening on http://{self.local_host}:{self.local_port}")
        self.ready.set()

        try:
            await self._stop_event.wait()
        finally:
            self.running = False
            self._server.close()
            await self.tunnels.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
            self._log("Proxy server stopped")

    def start(self):
        """启动代理服务器（阻塞直到 stop()）"""
        try:
            asyncio.run(self.serve())
        except Exception as e:
            self._log(f"Error starting proxy server: {e}", logging.ERROR)
            raise
        finally:
            self.ready.set()

    def stop(self):
        """停止代理服务器；可从其他线程调用"""
        loop, event = self._loop, self._stop_event
        if loop is None or event is None:
            return
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            # loop already closed
            pass

    async def handle_client(self, reader, writer):
        """处理一个客户端连接：读取请求头并分发"""
        handed_off = False
        try:
            request = await asyncio.wait_for(self.read_request(reader), self.config.header_timeout)
            if request is None:
                return
            self._log(f"Received request: {request.method} {request.target} {request.version}")
            handed_off = await self.dispatch(request, reader, writer)
        except asyncio.TimeoutError:
            self._log("Timed out reading request head", logging.DEBUG)
        except ForwardError as e:
            self._log(f"Error forwarding request: {e}", logging.WARNING)
            await self._send_error(writer, 502, b"Upstream connect failed")
        except ValueError as e:
            self._log(f"Bad request: {e}", logging.WARNING)
            await self._send_error(writer, 400, str(e).encode('utf-8', 'replace'))
        except Exception as e:
            self._log(f"Error handling client: {e}", logging.ERROR)
        finally:
            if not handed_off:
                await self._close_writer(writer)

    async def read_request(self, reader):
        try:
            head = await reader.readuntil(HEADER_END)
        except asyncio.IncompleteReadError:
            return None
        except asyncio.LimitOverrunError:
            raise ValueError("Request head too large")
        return parse_request_head(head[:-len(HEADER_END)])

    async def dispatch(self, request, reader, writer) -> bool:
        """按方法分发；返回 True 表示连接已交给隧道"""
        if request.method == 'CONNECT':
            return await self.handle_connect_request(request, reader, writer)
        body = await self.read_body(request, reader)
        await self.handle_http_request(request, body, writer)
        return False

    async def handle_connect_request(self, request, reader, writer) -> bool:
        """处理 CONNECT：先回复 200，再异步建立到目标的隧道"""
        try:
            target = parse_tunnel_target(request.target)
        except TargetParseError as e:
            self._log(str(e), logging.WARNING)
            await self._send_error(writer, 400, b"CONNECT must be to a socket address")
            return False

        # the client only learns whether the tunnel works by using it
        writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await writer.drain()
        self.tunnels.spawn(reader, writer, target)
        return True

    async def handle_http_request(self, request, body, writer):
        """转发普通 HTTP 请求到源站，并把响应原样返回给客户端"""
        host, port, path = self._origin_of(request)
        if host is None:
            await self._send_error(writer, 400, b"Missing Host")
            return

        # 重写请求首行为相对路径（origin server 需要）
        new_headers = [f"{request.method} {path} {request.version}"]
        for line in request.header_lines:
            key = line.split(':', 1)[0].strip().lower()
            if key in ('proxy-connection', 'connection'):
                continue
            new_headers.append(line)
        new_headers.append('Connection: close')
        request_out = ('\r\n'.join(new_headers) + '\r\n\r\n').encode('iso-8859-1') + body

        origin_writer = None
        try:
            origin_reader, origin_writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), self.config.connect_timeout)
            origin_writer.write(request_out)
            await origin_writer.drain()
        except (OSError, asyncio.TimeoutError) as e:
            if origin_writer is not None:
                await self._close_writer(origin_writer)
            raise ForwardError(f"{host}:{port}: {str(e) or type(e).__name__}") from e

        try:
            while True:
                data = await origin_reader.read(CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except OSError as e:
            self._log(f"Error relaying response from {host}:{port}: {e}", logging.WARNING)
        finally:
            await self._close_writer(origin_writer)

    def _origin_of(self, request):
        parsed = urlparse(request.target)
        if parsed.scheme and parsed.hostname:
            host = parsed.hostname
            port = parsed.port
            if port is None:
                port = 80 if parsed.scheme == 'http' else 443
            _check_origin_port(port)
            path = parsed.path or '/'
            if parsed.query:
                path += '?' + parsed.query
            return host, port, path

        path = request.target if request.target.startswith('/') else '/'
        host_value = request.header('host')
        if not host_value:
            return None, None, path
        hp = urlparse('//' + host_value)
        port = 80 if hp.port is None else hp.port
        _check_origin_port(port)
        return hp.hostname, port, path

    async def read_body(self, request, reader) -> bytes:
        """读取请求体：支持 Content-Length 或 Transfer-Encoding: chunked"""
        transfer_encoding = request.header('transfer-encoding') or ''
        if 'chunked' in transfer_encoding.lower():
            return await self._read_chunked_body(reader)

        content_length = request.header('content-length')
        if not content_length:
            return b''
        length = int(content_length)
        if length < 0:
            raise ValueError(f"Invalid Content-Length: {content_length}")
        try:
            return await reader.readexactly(length)
        except asyncio.IncompleteReadError as e:
            return e.partial

    async def _read_chunked_body(self, reader) -> bytes:
        """读取 chunked 编码的请求体，保留原始分块字节"""
        data = b''
        while True:
            size_line = await reader.readline()
            if not size_line:
                return data
            data += size_line
            try:
                size = int(size_line.strip().split(b';')[0], 16)
            except ValueError:
                size = 0

            if size == 0:
                # trailers up to the terminating blank line
                while True:
                    line = await reader.readline()
                    data += line
                    if line in (b'\r\n', b'\n', b''):
                        return data

            try:
                data += await reader.readexactly(size + 2)  # data + CRLF
            except asyncio.IncompleteReadError as e:
                return data + e.partial

    async def _send_error(self, writer, status, body: bytes):
        reason = _REASONS.get(status, 'Error')
        head = (f"HTTP/1.1 {status} {reason}\r\n"
                f"Content-Length: {len(body)}\r\n"
                "Connection: close\r\n\r\n")
        try:
            writer.write(head.encode('ascii') + body)
            await writer.drain()
        except OSError as e:
            self._log(f"Error sending {status} response: {e}", logging.DEBUG)

    async def _close_writer(self, writer):
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
