"""
转发进程启动器

为单条规则启动一个 socat 进程：
    socat TCP-LISTEN:<local>,fork,reuseaddr TCP:<host>:<port>
    socat UDP-LISTEN:<local>,fork,reuseaddr UDP:<host>:<port>

启动后等待一小段时间再确认进程仍然存活，立即退出的进程按启动失败处理，
并撤销已写入的登记记录。
"""

import logging
import shlex
import shutil
import socket
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import psutil

from port_forward.config import ForwardConfig
from port_forward.errors import (
    EngineNotFound,
    LaunchFailed,
    PortForwardError,
    PortInUse,
    ProcessAlreadyDead,
)
from port_forward.registry import ProcessRegistry, SupervisedProcess, process_alive
from port_forward.rules import ForwardRule, Protocol

logger = logging.getLogger(__name__)

# 启动后确认存活前的等待时间
LAUNCH_GRACE_SECONDS = 0.5


def is_port_in_use(port: int, protocol: Protocol, host: str = "0.0.0.0") -> bool:
    """通过尝试 bind 判断本地端口是否已被占用"""
    sock_type = socket.SOCK_DGRAM if protocol == Protocol.UDP else socket.SOCK_STREAM
    sock = socket.socket(socket.AF_INET, sock_type)
    try:
        if protocol == Protocol.TCP:
            # 忽略 TIME_WAIT，只关心监听中的 socket
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return False
    except OSError:
        return True
    finally:
        sock.close()


class Launcher(ABC):
    """
    启动器基类

    launch() 负责端口预检查、登记和存活确认；子类只需实现进程相关的操作。
    """

    def __init__(self, check_ports: bool = True, cancel_event: Optional[threading.Event] = None):
        self.check_ports = check_ports
        self.cancel_event = cancel_event

    def check_engine(self) -> None:
        """确认转发引擎可用，不可用时抛出 EngineNotFound"""

    def port_in_use(self, port: int, protocol: Protocol) -> bool:
        return is_port_in_use(port, protocol)

    @abstractmethod
    def _spawn(self, rule: ForwardRule) -> SupervisedProcess:
        ...

    @abstractmethod
    def is_alive(self, process: SupervisedProcess) -> bool:
        ...

    @abstractmethod
    def terminate(self, process: SupervisedProcess) -> None:
        """发送 SIGTERM；进程已不存在时抛出 ProcessAlreadyDead"""

    @abstractmethod
    def kill(self, process: SupervisedProcess) -> None:
        ...

    def forget(self, process: SupervisedProcess) -> None:
        """登记项已判定失效时调用，释放启动器为该进程保留的状态"""

    def _wait(self, seconds: float) -> None:
        # 收到终止信号时提前结束等待
        if self.cancel_event is not None:
            self.cancel_event.wait(seconds)
        else:
            time.sleep(seconds)

    def launch(self, rule: ForwardRule, registry: ProcessRegistry) -> SupervisedProcess:
        """
        启动一条规则的转发进程

        Returns:
            已登记且确认存活的 SupervisedProcess

        Raises:
            PortInUse: 本地端口已被占用
            LaunchFailed: 进程无法启动或启动后立即退出
        """
        if self.check_ports and self.port_in_use(rule.local_port, rule.protocol):
            raise PortInUse(rule.local_port, rule.protocol.value)

        process = self._spawn(rule)
        try:
            registry.record(process)
        except OSError as e:
            self.kill(process)
            raise LaunchFailed(rule.local_port, f"cannot record process: {e}") from e

        self._wait(LAUNCH_GRACE_SECONDS)
        if not self.is_alive(process):
            registry.remove(rule.local_port)
            raise LaunchFailed(rule.local_port, "engine exited during startup")

        return process


class SocatLauncher(Launcher):
    """通过 socat 实现转发"""

    def __init__(
        self,
        engine: str = "socat",
        extra_options: str = "",
        log_file: Optional[str] = None,
        check_ports: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ):
        super().__init__(check_ports=check_ports, cancel_event=cancel_event)
        self.engine = engine
        self.extra_options = extra_options
        self.log_file = log_file
        self._children: Dict[int, subprocess.Popen] = {}

    @classmethod
    def from_config(
        cls,
        config: ForwardConfig,
        log_file: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "SocatLauncher":
        return cls(
            engine=config.engine,
            extra_options=config.extra_engine_options,
            log_file=log_file,
            check_ports=config.check_ports_before_start,
            cancel_event=cancel_event,
        )

    def check_engine(self) -> None:
        if shutil.which(self.engine) is None:
            raise EngineNotFound(self.engine)

    def build_command(self, rule: ForwardRule) -> List[str]:
        engine_path = shutil.which(self.engine)
        if not engine_path:
            raise EngineNotFound(self.engine)

        # 监听模式与转发模式必须使用同一协议
        mode = rule.protocol.value.upper()
        cmd = (
            f"{shlex.quote(engine_path)} "
            f"{mode}-LISTEN:{rule.local_port},fork,reuseaddr "
            f"{mode}:{shlex.quote(rule.destination)}"
        )
        if self.extra_options:
            cmd = f"{cmd}{self.extra_options}"
        try:
            return shlex.split(cmd)
        except ValueError as e:
            # extra_engine_options 中引号不成对
            raise LaunchFailed(rule.local_port, f"invalid engine options: {e}") from e

    def _spawn(self, rule: ForwardRule) -> SupervisedProcess:
        cmd = self.build_command(rule)
        logger.debug(f"spawning: {' '.join(cmd)}")

        output = None
        if self.log_file:
            try:
                output = open(self.log_file, "ab")
            except OSError as e:
                logger.warning(f"cannot open log file {self.log_file} for engine output: {e}")

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=output if output is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            raise LaunchFailed(rule.local_port, str(e)) from e
        finally:
            if output is not None:
                output.close()

        self._children[proc.pid] = proc
        try:
            started_at = psutil.Process(proc.pid).create_time()
        except psutil.Error:
            started_at = None

        return SupervisedProcess(
            local_port=rule.local_port,
            pid=proc.pid,
            started_at=started_at,
            rule=rule,
        )

    def _reap(self, pid: int) -> bool:
        """回收本进程启动的子进程，返回其是否已退出"""
        child = self._children.get(pid)
        if child is None:
            return False
        if child.poll() is not None:
            self._children.pop(pid, None)
            return True
        return False

    def is_alive(self, process: SupervisedProcess) -> bool:
        if self._reap(process.pid):
            return False
        return process_alive(process)

    def forget(self, process: SupervisedProcess) -> None:
        child = self._children.pop(process.pid, None)
        if child is not None:
            # 回收已退出的子进程，避免残留僵尸进程
            child.poll()

    def _signal(self, process: SupervisedProcess, force: bool) -> None:
        if not self.is_alive(process):
            raise ProcessAlreadyDead(process.local_port, process.pid)
        try:
            proc = psutil.Process(process.pid)
            # socat 每个连接 fork 一个子进程，一并结束
            targets = proc.children(recursive=True) + [proc]
        except psutil.NoSuchProcess:
            raise ProcessAlreadyDead(process.local_port, process.pid) from None

        for target in targets:
            try:
                if force:
                    target.kill()
                else:
                    target.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                raise PortForwardError(
                    f"permission denied signalling pid {target.pid}", port=process.local_port
                ) from e
        self._reap(process.pid)

    def terminate(self, process: SupervisedProcess) -> None:
        self._signal(process, force=False)

    def kill(self, process: SupervisedProcess) -> None:
        try:
            self._signal(process, force=True)
        except ProcessAlreadyDead:
            pass
