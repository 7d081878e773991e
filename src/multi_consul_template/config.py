"""MCT 环境变量配置管理。

环境变量（作为同名命令行参数的默认值）:
    MCT_BIN: consul-template 可执行文件
        - 默认 "consul-template"

    MCT_CONSUL_ENDPOINT: Consul HTTP 地址
        - unix://<socket 路径> 或 tcp://<host>:<port>
        - 默认 tcp://localhost:8500

    MCT_LOG_LEVEL: multi_consul_template 日志级别
        - DEBUG/INFO/WARNING/ERROR，默认 INFO

    MCT_LOG_DEBUG: 调试日志模式
        - true/1/yes = 开启 (DEBUG 日志写入临时文件)
        - false/0/no = 关闭 (默认，输出到 stderr)
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .consul.types import Endpoint

__all__ = [
    "Config",
    "ConfigError",
    "WatchPair",
    "parse_endpoint",
    "parse_pair",
    "parse_log_level",
]

DEFAULT_BIN = "consul-template"
DEFAULT_ENDPOINT = "tcp://localhost:8500"

_UNIX_RE = re.compile(r"^unix://(.+)$")
_TCP_RE = re.compile(r"^tcp://(.+):([0-9]+)$")


class ConfigError(ValueError):
    """命令行或环境变量配置无效。"""


@dataclass(frozen=True)
class WatchPair:
    """映射到本地目录的 Consul 前缀。"""

    prefix: str
    directory: Path

    def __str__(self) -> str:
        return f"{self.prefix}:{self.directory}"


def parse_endpoint(value: str) -> Endpoint:
    """解析 ``unix://<path>`` 或 ``tcp://<host>:<port>``。

    Raises:
        ConfigError: 两种格式都不匹配
    """
    value = value.strip()
    match = _UNIX_RE.match(value)
    if match:
        return Endpoint.unix(match.group(1))
    match = _TCP_RE.match(value)
    if match:
        port = int(match.group(2))
        if not 0 < port < 65536:
            raise ConfigError(f"Consul endpoint port out of range: {value}")
        return Endpoint.inet(match.group(1), port)
    raise ConfigError(
        f"Badly formatted consul endpoint {value!r}, expected unix://PATH or tcp://HOST:PORT"
    )


def parse_pair(value: str) -> WatchPair:
    """解析 ``FROM:TO``，按第一个冒号分割。

    Raises:
        ConfigError: 缺少分隔符，或 TO 不是已存在的目录
    """
    prefix, sep, directory = value.partition(":")
    if not sep or not directory:
        raise ConfigError(f"Expected FROM:TO, got {value!r}")
    path = Path(directory)
    if not path.is_dir():
        raise ConfigError(f"No such directory: {directory}")
    return WatchPair(prefix=prefix, directory=path)


def parse_log_level(value: str | None) -> int:
    """解析日志级别名称，未设置时为 INFO。"""
    if not value:
        return logging.INFO
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {value}")
    return level


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔型环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _generate_log_file_path() -> str:
    """生成调试日志文件路径（系统临时目录下）。"""
    log_dir = Path(tempfile.gettempdir()) / "multi-consul-template"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"mct_debug_{timestamp}.log"

    return str(log_file.resolve())


def env_defaults() -> dict[str, str]:
    """从 MCT_* 环境变量读取命令行默认值。"""
    return {
        "bin": os.environ.get("MCT_BIN") or DEFAULT_BIN,
        "consul_endpoint": os.environ.get("MCT_CONSUL_ENDPOINT") or DEFAULT_ENDPOINT,
        "log_level": os.environ.get("MCT_LOG_LEVEL") or "INFO",
    }


@dataclass
class Config:
    """MCT 配置。

    Attributes:
        config_path: consul-template 配置文件（包含生成区块）
        consul_bin: consul-template 可执行文件
        consul_endpoint: Consul HTTP 地址
        watched_pairs: 前缀 -> 目录 映射列表
        log_level: multi_consul_template 日志级别
        log_debug: 调试日志模式（DEBUG 日志写入临时文件）
        log_file: 调试日志路径（log_debug=True 时设置）
        consul_wait: 阻塞查询等待时间，Consul duration 语法
        consul_retry_delay: Consul 请求失败后的退避时间（秒）
        spawn_retry_delay: 渲染进程启动失败后的退避时间（秒）
        grace_period: 发送就绪 SIGHUP 前的等待时间（秒）
        shutdown_timeout: 关闭时等待任务结束的时间，超时后取消
    """

    config_path: Path
    consul_bin: str = DEFAULT_BIN
    consul_endpoint: Endpoint = field(default_factory=lambda: parse_endpoint(DEFAULT_ENDPOINT))
    watched_pairs: list[WatchPair] = field(default_factory=list)
    log_level: int = logging.INFO
    log_debug: bool = False
    log_file: str | None = None
    consul_wait: str = "10s"
    consul_retry_delay: float = 5.0
    spawn_retry_delay: float = 5.0
    grace_period: float = 1.0
    shutdown_timeout: float = 15.0

    def __repr__(self) -> str:
        pairs_str = ",".join(str(pair) for pair in self.watched_pairs) or "none"
        return (
            f"Config(config_path={self.config_path}, "
            f"consul_bin={self.consul_bin}, "
            f"consul_endpoint={self.consul_endpoint}, "
            f"watched_pairs={pairs_str}, "
            f"log_level={logging.getLevelName(self.log_level)}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def load_log_debug() -> tuple[bool, str | None]:
    """读取 MCT_LOG_DEBUG，开启时生成调试日志路径。"""
    log_debug = _parse_bool(os.environ.get("MCT_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None
    return log_debug, log_file
