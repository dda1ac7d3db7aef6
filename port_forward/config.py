"""
配置管理模块

从 YAML 文件加载配置。配置对象不可变，启动时构建一次，
之后显式传递给各组件。
"""

import getpass
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CONFIG_PATH = "/etc/port-forward/config.yaml"


class APIConfig(BaseModel):
    """控制 API 配置"""

    model_config = ConfigDict(frozen=True)

    listen: str = Field(default="127.0.0.1:9180", description="监听地址")
    token: Optional[str] = Field(default=None, description="认证 Token，为空时不校验")

    @property
    def host(self) -> str:
        return self.listen.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.listen.rsplit(":", 1)[1])


class ForwardConfig(BaseModel):
    """端口转发管理器配置"""

    model_config = ConfigDict(frozen=True)

    ports_file: str = Field(default="/etc/port-forward/ports.conf", description="转发规则文件")
    logging_enabled: bool = Field(default=False, description="是否写入日志文件")
    log_file: str = Field(default="/var/log/port-forward/port-forward.log", description="日志文件路径")
    check_ports_before_start: bool = Field(default=True, description="启动前检查本地端口是否被占用")
    extra_engine_options: str = Field(default="", description="原样追加到每条 socat 命令后的参数")
    auto_restart: bool = Field(default=True, description="崩溃后自动重启（由 systemd 执行，仅作提示）")
    language: str = Field(default="auto", description="输出语言: auto|en|ru")
    debug: bool = Field(default=False, description="调试日志")
    engine: str = Field(default="socat", description="转发引擎可执行文件")
    registry_dir: str = Field(default="/run/port-forward", description="PID 记录目录")
    fallback_registry_dir: str = Field(default="/tmp/port-forward-pids", description="PID 目录不可写时的备用目录")
    api: APIConfig = Field(default_factory=APIConfig)

    @property
    def run_as_user(self) -> str:
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            # 无登录名且 passwd 中没有当前 uid（精简容器）
            return str(os.getuid())


def load_config(config_path: Optional[str] = None, **overrides) -> ForwardConfig:
    """
    加载配置文件

    Args:
        config_path: 配置文件路径，默认为 /etc/port-forward/config.yaml
        overrides: 覆盖文件中的同名配置项（值为 None 的项忽略）

    Returns:
        ForwardConfig 实例；配置文件不存在时使用默认配置
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    raw_config = {}
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
        if not isinstance(raw_config, dict):
            raise ValueError(f"config file must contain a mapping: {config_path}")

    raw_config.update({k: v for k, v in overrides.items() if v is not None})
    return ForwardConfig(**raw_config)
