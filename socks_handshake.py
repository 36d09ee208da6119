import asyncio
import logging

from python_socks import ProxyConnectionError, ProxyError, ProxyType
from python_socks.async_.asyncio import Proxy

from proxy_errors import AuthError, DialError, HandshakeError


class Socks5Connector:
    """通过配置的上游 SOCKS5 代理打开到目标的连接。

    python-socks 在事件循环上完成拨号与协商（问候、可选的用户名/密码子协商、
    CONNECT 请求及应答），整个过程受 ``timeout`` 限制；卡住的上游只会占用自己的
    隧道任务。返回时套接字正好位于隧道负载的第一个字节，不残留任何 SOCKS 帧。
    """

    def __init__(self, upstream, timeout=10.0):
        self.upstream = upstream
        self.timeout = timeout
        self._logger = logging.getLogger('Socks5Connector')

    def _proxy(self):
        creds = self.upstream.credentials
        return Proxy(
            ProxyType.SOCKS5,
            self.upstream.host,
            self.upstream.port,
            username=creds.username if creds else None,
            password=creds.password if creds else None,
            rdns=False,
        )

    async def open(self, target):
        """拨号并协商，返回上游的 (reader, writer)"""
        upstream = f"{self.upstream.host}:{self.upstream.port}"
        try:
            sock = await asyncio.wait_for(
                self._proxy().connect(dest_host=str(target.ip), dest_port=target.port),
                timeout=self.timeout,
            )
        except ProxyConnectionError as e:
            raise DialError(f"Error connecting to SOCKS5 proxy {upstream}: {e}") from e
        except ProxyError as e:
            raise classify_proxy_error(e) from e
        except asyncio.TimeoutError as e:
            raise HandshakeError(f"SOCKS5 proxy {upstream} timed out after {self.timeout}s") from e
        except OSError as e:
            raise HandshakeError(f"SOCKS5 proxy {upstream} dropped the connection: {e}") from e

        self._logger.debug("SOCKS5 handshake with %s complete for %s", upstream, target)
        try:
            return await asyncio.open_connection(sock=sock)
        except BaseException:
            sock.close()
            raise


def classify_proxy_error(err):
    """把 python-socks 的协商错误映射为 AuthError / HandshakeError"""
    message = str(err)
    if err.error_code is not None:
        return HandshakeError(message, reply_code=int(err.error_code))
    # method selection and RFC 1929 failures all name "authentication"
    if 'authentication' in message.lower():
        return AuthError(message)
    return HandshakeError(message)
