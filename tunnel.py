import uuid
import asyncio
import logging
import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Union

from proxy_errors import DialError, RelayIOError, TargetParseError, TunnelError
from socks_handshake import Socks5Connector

CHUNK_SIZE = 65536

CLIENT_TO_UPSTREAM = 'client->upstream'
UPSTREAM_TO_CLIENT = 'upstream->client'


class TunnelState(Enum):
    DIALING = 'dialing'
    HANDSHAKING = 'handshaking'
    RELAYING = 'relaying'
    CLOSED = 'closed'
    FAILED = 'failed'


@dataclass(frozen=True)
class TunnelTarget:
    ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
    port: int

    def __str__(self):
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def parse_tunnel_target(authority: str) -> TunnelTarget:
    """解析 CONNECT 的 authority，只接受字面量 IP:port（IPv6 需加方括号）"""
    host, sep, port_text = authority.rpartition(':')
    if not sep or not host or not (port_text.isascii() and port_text.isdigit()):
        raise TargetParseError(f"CONNECT host is not socket addr: {authority!r}")

    bracketed = host.startswith('[') and host.endswith(']')
    if bracketed:
        host = host[1:-1]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise TargetParseError(f"CONNECT host is not socket addr: {authority!r}") from None
    if ip.version == 6 and not bracketed or ip.version == 4 and bracketed:
        raise TargetParseError(f"CONNECT host is not socket addr: {authority!r}")

    port = int(port_text)
    if not 0 < port <= 65535:
        raise TargetParseError(f"CONNECT port out of range: {authority!r}")
    return TunnelTarget(ip, port)


class Tunnel:
    """一条 CONNECT 隧道：独占客户端流和上游流，直到两个方向都结束"""

    def __init__(self, target, client_reader, client_writer):
        self.tunnel_id = str(uuid.uuid4())[:8]
        self.target = target
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.upstream_reader = None
        self.upstream_writer = None
        self.state = TunnelState.DIALING
        self.failed_stage = None
        self.error = None
        self.bytes_up = 0
        self.bytes_down = 0

    def fail(self, error, stage=None):
        # only the first error is kept; later ones are fallout from the abort
        if self.error is not None:
            return False
        self.error = error
        self.failed_stage = stage or self.state
        self.state = TunnelState.FAILED
        return True

    def abort(self):
        for writer in (self.client_writer, self.upstream_writer):
            if writer is not None:
                writer.transport.abort()

    async def close(self):
        for writer in (self.client_writer, self.upstream_writer):
            if writer is None:
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass


class TunnelRelay:
    """双向拷贝：两个方向各自独立运行，全部结束后才返回（join 而非 race）"""

    def __init__(self, tunnel):
        self.tunnel = tunnel

    async def run(self):
        t = self.tunnel
        up = asyncio.ensure_future(
            self._pipe(CLIENT_TO_UPSTREAM, t.client_reader, t.upstream_writer))
        down = asyncio.ensure_future(
            self._pipe(UPSTREAM_TO_CLIENT, t.upstream_reader, t.client_writer))
        try:
            t.bytes_up, t.bytes_down = await asyncio.gather(up, down)
        finally:
            up.cancel()
            down.cancel()
        if t.error is None:
            t.state = TunnelState.CLOSED
        return t

    async def _pipe(self, direction, reader, writer):
        total = 0
        try:
            while True:
                data = await reader.read(CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                total += len(data)
            # pass the half-close on; the other direction keeps running
            if writer.can_write_eof():
                writer.write_eof()
        except OSError as e:
            if self.tunnel.fail(RelayIOError(direction, e)):
                self.tunnel.abort()
        return total


class TunnelManager:
    """为每个 CONNECT 建立隧道：拨号上游、SOCKS5 协商、双向转发"""

    def __init__(self, config, connector=None, logger=None):
        self.config = config
        self.connector = connector or Socks5Connector(config.upstream, timeout=config.connect_timeout)
        self.logger = logger
        self._logger = logging.getLogger('TunnelManager')
        self._tasks = set()

    def _log(self, message: str, level=logging.INFO):
        self._logger.log(level, message)
        if self.logger:
            try:
                self.logger(message)
            except Exception:
                pass

    @property
    def active(self):
        return len(self._tasks)

    def spawn(self, client_reader, client_writer, target):
        """以独立任务运行隧道，调用方无需等待"""
        task = asyncio.ensure_future(self.run(client_reader, client_writer, target))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, client_reader, client_writer, target):
        tunnel = Tunnel(target, client_reader, client_writer)
        self._log(f"Tunnel {tunnel.tunnel_id}: dialing {self.config.upstream.host}:"
                  f"{self.config.upstream.port} for {target}", logging.DEBUG)
        try:
            tunnel.upstream_reader, tunnel.upstream_writer = await self.connector.open(target)
        except TunnelError as e:
            stage = TunnelState.DIALING if isinstance(e, DialError) else TunnelState.HANDSHAKING
            tunnel.fail(e, stage)
            self._log(f"Tunnel {tunnel.tunnel_id} to {target} failed while {stage.value}: "
                      f"{type(e).__name__}: {e}", logging.WARNING)
            await tunnel.close()
            return tunnel
        except asyncio.CancelledError:
            await tunnel.close()
            raise
        except Exception as e:
            tunnel.fail(e, TunnelState.HANDSHAKING)
            self._log(f"Tunnel {tunnel.tunnel_id} to {target} failed: {e}", logging.ERROR)
            await tunnel.close()
            return tunnel

        tunnel.state = TunnelState.RELAYING
        self._log(f"Tunnel {tunnel.tunnel_id} established to {target}")
        try:
            await TunnelRelay(tunnel).run()
        finally:
            await tunnel.close()

        if tunnel.error is not None:
            self._log(f"Tunnel {tunnel.tunnel_id} to {target} failed while relaying: "
                      f"{type(tunnel.error).__name__}: {tunnel.error}", logging.WARNING)
        else:
            self._log(f"Tunnel {tunnel.tunnel_id} closed ({tunnel.bytes_up} bytes up, "
                      f"{tunnel.bytes_down} bytes down)")
        return tunnel

    async def close(self):
        """服务器停止时取消仍在运行的隧道"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
