import os
import socket
import logging
from dataclasses import dataclass, field
from typing import Optional

from proxy_errors import ConfigError

SERVER_ADDR_ENV = 'SERVER_SOADDR'
SOCKS_ADDR_ENV = 'SOCKS_SOADDR'
SOCKS_USERNAME_ENV = 'SOCKS_USERNAME'
SOCKS_PASSWORD_ENV = 'SOCKS_PASSWORD'
CONNECT_TIMEOUT_ENV = 'SOCKS_CONNECT_TIMEOUT'
HEADER_TIMEOUT_ENV = 'PROXY_HEADER_TIMEOUT'
LOG_LEVEL_ENV = 'PROXY_LOG_LEVEL'

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_HEADER_TIMEOUT = 5.0


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class UpstreamConfig:
    host: str
    port: int
    credentials: Optional[Credentials] = None

    @property
    def address(self):
        return self.host, self.port


@dataclass(frozen=True)
class ProxyConfig:
    """启动时构建一次的只读配置，由服务器和所有隧道共享"""
    listen_host: str
    listen_port: int
    upstream: UpstreamConfig
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    header_timeout: float = DEFAULT_HEADER_TIMEOUT
    log_level: int = logging.INFO

    @classmethod
    def from_env(cls, environ=None):
        """从环境变量读取配置；任何问题都抛出 ConfigError"""
        env = os.environ if environ is None else environ

        listen_raw = env.get(SERVER_ADDR_ENV)
        if not listen_raw:
            raise ConfigError(f"Please provide server address to bind using {SERVER_ADDR_ENV}")
        host, port = parse_socket_address(listen_raw, SERVER_ADDR_ENV)
        listen_host, listen_port = resolve_listen_address(host, port)

        upstream_raw = env.get(SOCKS_ADDR_ENV)
        if not upstream_raw:
            raise ConfigError(f"Please provide socks upstream addr using {SOCKS_ADDR_ENV}")
        up_host, up_port = parse_socket_address(upstream_raw, SOCKS_ADDR_ENV)

        upstream = UpstreamConfig(up_host, up_port, _credentials_from_env(env))

        return cls(
            listen_host=listen_host,
            listen_port=listen_port,
            upstream=upstream,
            connect_timeout=_positive_float(env, CONNECT_TIMEOUT_ENV, DEFAULT_CONNECT_TIMEOUT),
            header_timeout=_positive_float(env, HEADER_TIMEOUT_ENV, DEFAULT_HEADER_TIMEOUT),
            log_level=_log_level(env.get(LOG_LEVEL_ENV) or 'INFO'),
        )


def parse_socket_address(value: str, name: str = 'address'):
    """解析 host:port 或 [v6]:port，返回 (host, port)"""
    value = value.strip()
    host, sep, port_text = value.rpartition(':')
    if not sep or not host:
        raise ConfigError(f"{name} must be host:port, got {value!r}")

    if host.startswith('['):
        if not host.endswith(']'):
            raise ConfigError(f"{name} has an unterminated IPv6 literal: {value!r}")
        host = host[1:-1]
    elif ':' in host:
        raise ConfigError(f"{name}: IPv6 addresses must be bracketed, got {value!r}")

    if not (port_text.isascii() and port_text.isdigit()):
        raise ConfigError(f"{name} has an invalid port: {value!r}")
    port = int(port_text)
    if port > 65535:
        raise ConfigError(f"{name} port out of range: {value!r}")
    return host, port


def resolve_listen_address(host: str, port: int):
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    except (socket.gaierror, UnicodeError) as e:
        raise ConfigError(f"Unable to resolve listen address {host}:{port}: {e}") from e
    if not infos:
        raise ConfigError(f"No socket address found for {host}:{port}")
    sockaddr = infos[0][4]
    return sockaddr[0], sockaddr[1]


def _credentials_from_env(env):
    username = env.get(SOCKS_USERNAME_ENV) or None
    password = env.get(SOCKS_PASSWORD_ENV) or None
    if username is None:
        # no username means the upstream needs no authentication
        return None
    if password is None:
        raise ConfigError(f"{SOCKS_USERNAME_ENV} is set, please provide {SOCKS_PASSWORD_ENV}")
    return Credentials(username, password)


def _positive_float(env, name, default):
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _log_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ConfigError(f"{LOG_LEVEL_ENV} is not a logging level: {name!r}")
    return level
