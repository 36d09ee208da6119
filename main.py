# main.py - 程序入口：从环境变量读取配置并启动代理
import sys
import logging

from proxy_config import ProxyConfig
from proxy_errors import ConfigError
from proxy_server import ProxyServer


def main(environ=None):
    try:
        config = ProxyConfig.from_env(environ)
    except ConfigError as e:
        print(f"配置错误: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    server = ProxyServer(config)
    try:
        server.start()
    except KeyboardInterrupt:
        print("\nShutting down proxy server...")
    except OSError as e:
        print(f"server error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
