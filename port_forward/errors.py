"""
错误类型定义

单条规则的错误（PortInUse / LaunchFailed / ProcessAlreadyDead）只跳过该规则，
只有整个规则文件无法读取（ConfigMissing）或缺少转发引擎（EngineNotFound）
才会终止 start。
"""

from typing import Optional


class PortForwardError(Exception):
    """所有端口转发错误的基类"""

    key = "error"

    def __init__(self, message: str, port: Optional[int] = None):
        super().__init__(message)
        self.port = port


class ConfigMissing(PortForwardError):
    """规则文件不存在或无法读取"""

    key = "no_ports_file"

    def __init__(self, path: str, reason: Optional[str] = None):
        message = f"rules file not readable: {path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.path = path


class EngineNotFound(PortForwardError):
    key = "missing_deps"

    def __init__(self, engine: str):
        super().__init__(f"forwarding engine not found in PATH: {engine}")
        self.engine = engine


class PortInUse(PortForwardError):
    """本地端口已被占用"""

    key = "port_in_use"

    def __init__(self, port: int, protocol: str):
        super().__init__(f"port {port}/{protocol} is already in use", port=port)
        self.protocol = protocol


class LaunchFailed(PortForwardError):
    """转发进程启动后立即退出，或根本无法启动"""

    key = "forward_failed"

    def __init__(self, port: int, reason: str):
        super().__init__(f"forward on port {port} failed: {reason}", port=port)
        self.reason = reason


class ProcessAlreadyDead(PortForwardError):
    key = "process_already_dead"

    def __init__(self, port: int, pid: int):
        super().__init__(f"process {pid} for port {port} is no longer running", port=port)
        self.pid = pid
