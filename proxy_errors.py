"""代理各阶段使用的异常类型"""


class ConfigError(Exception):
    """启动配置缺失或不合法（致命，进程不启动）"""


class TargetParseError(ValueError):
    """CONNECT 目标不是字面量 socket 地址"""


class TunnelError(Exception):
    """单条隧道内的错误，只影响该隧道"""


class DialError(TunnelError):
    """无法建立到上游 SOCKS5 代理的 TCP 连接"""


class AuthError(TunnelError):
    """上游拒绝认证，或选择了不支持的认证方式"""


class HandshakeError(TunnelError):
    """SOCKS5 协商失败；reply_code 为上游返回的应答码（如有）"""

    def __init__(self, message, reply_code=None):
        super().__init__(message)
        self.reply_code = reply_code


class RelayIOError(TunnelError):
    """转发过程中的读写错误"""

    def __init__(self, direction, cause):
        super().__init__(f"{direction}: {cause}")
        self.direction = direction
        self.cause = cause


class ForwardError(Exception):
    """普通 HTTP 请求转发到源站失败"""
