"""
生命周期控制

对整个规则集执行 start / stop / restart / reload / status。
控制器本身无状态，两次调用之间只通过登记表共享信息。
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from port_forward.config import ForwardConfig
from port_forward.errors import (
    ConfigMissing,
    EngineNotFound,
    LaunchFailed,
    PortForwardError,
    PortInUse,
    ProcessAlreadyDead,
)
from port_forward.launcher import Launcher
from port_forward.registry import ProcessRegistry
from port_forward.reporter import Reporter
from port_forward.rules import ForwardRule, load_rules

logger = logging.getLogger(__name__)

STOP_GRACE_SECONDS = 0.2
RESTART_PAUSE_SECONDS = 1.0
RELOAD_PAUSE_SECONDS = 0.5


@dataclass
class StartReport:
    started: List[int] = field(default_factory=list)
    already_running: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    cancelled: bool = False


@dataclass
class StopReport:
    stopped: List[int] = field(default_factory=list)
    force_stopped: List[int] = field(default_factory=list)
    already_dead: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)


@dataclass
class PortState:
    port: int
    active: bool
    pid: Optional[int] = None
    destination: Optional[str] = None
    protocol: Optional[str] = None


@dataclass
class StatusReport:
    ports: List[PortState] = field(default_factory=list)
    ports_file: str = ""
    logging_enabled: bool = False
    log_file: Optional[str] = None
    run_as_user: str = ""
    auto_restart: bool = False
    registry_dir: Optional[str] = None

    @property
    def active_count(self) -> int:
        return sum(1 for p in self.ports if p.active)

    @property
    def inactive_count(self) -> int:
        return sum(1 for p in self.ports if not p.active)


class LifecycleController:
    """转发规则集的生命周期控制器"""

    def __init__(
        self,
        config: ForwardConfig,
        registry: ProcessRegistry,
        launcher: Launcher,
        reporter: Reporter,
        cancel_event: Optional[threading.Event] = None,
        log_file: Optional[str] = None,
    ):
        self.config = config
        self.registry = registry
        self.launcher = launcher
        self.reporter = reporter
        self.cancel_event = cancel_event or threading.Event()
        self.log_file = log_file

    def _pause(self, seconds: float) -> None:
        self.cancel_event.wait(seconds)

    def load_rules(self) -> Dict[int, ForwardRule]:
        try:
            return load_rules(self.config.ports_file, self.reporter).rules
        except ConfigMissing as e:
            self.reporter.report("error", e.key, path=e.path)
            raise

    def start(self) -> StartReport:
        """
        启动所有规则

        单条规则失败只记录并跳过；规则文件缺失或引擎不存在时抛出异常。
        收到取消信号时停止启动新规则，并执行完整的 stop。
        """
        self.reporter.report("info", "starting_service")
        try:
            self.launcher.check_engine()
        except EngineNotFound as e:
            self.reporter.report("error", e.key, engine=e.engine)
            raise

        rules = self.load_rules()
        report = StartReport()
        if not rules:
            self.reporter.report("warning", "no_ports_configured")
            return report

        for port in sorted(rules):
            if self.cancel_event.is_set():
                break
            self._start_rule(rules[port], report)

        if self.cancel_event.is_set():
            self.reporter.report("info", "received_signal")
            report.cancelled = True
            self.stop()

        return report

    def _start_rule(self, rule: ForwardRule, report: StartReport) -> None:
        port = rule.local_port
        with self.registry.lock(port):
            existing = self.registry.lookup(port)
            if existing is not None:
                if self.launcher.is_alive(existing):
                    self.reporter.report("info", "already_running", port=port, pid=existing.pid)
                    report.already_running.append(port)
                    return
                self.registry.remove(port)
                self.launcher.forget(existing)
                self.reporter.report("info", "stale_entry_removed", port=port, pid=existing.pid)

            self.reporter.report(
                "info", "starting_forward",
                port=port, destination=rule.destination, protocol=rule.protocol.value,
            )
            try:
                process = self.launcher.launch(rule, self.registry)
            except PortInUse as e:
                self.reporter.report("warning", e.key, port=port, protocol=e.protocol)
                report.failed[port] = str(e)
                return
            except LaunchFailed as e:
                self.reporter.report("error", e.key, port=port, reason=e.reason)
                report.failed[port] = str(e)
                return

            self.reporter.report("info", "forward_started", port=port, pid=process.pid)
            report.started.append(port)

    def stop(self) -> StopReport:
        """
        停止所有登记的转发进程

        只处理登记表中的进程，不会结束其他 socat 实例。
        """
        self.reporter.report("info", "stopping_service")
        report = StopReport()
        for process in self.registry.entries():
            with self.registry.lock(process.local_port):
                self._stop_process(process, report)
        return report

    def _stop_process(self, process, report: StopReport) -> None:
        port = process.local_port
        try:
            self.launcher.terminate(process)
            time.sleep(STOP_GRACE_SECONDS)
            if self.launcher.is_alive(process):
                self.launcher.kill(process)
                self.reporter.report("info", "force_stopped", port=port)
                report.force_stopped.append(port)
            else:
                self.reporter.report("info", "stopped", port=port)
                report.stopped.append(port)
        except ProcessAlreadyDead as e:
            self.reporter.report("info", e.key, port=port, pid=e.pid)
            report.already_dead.append(port)
        except PortForwardError as e:
            self.reporter.report("error", "error_stopping", port=port, reason=str(e))
            report.errors[port] = str(e)
        finally:
            self.registry.remove(port)

    def restart(self) -> StartReport:
        self.stop()
        self._pause(RESTART_PAUSE_SECONDS)
        return self.start()

    def reload(self) -> StartReport:
        self.reporter.report("info", "reloading_config")
        self.stop()
        self._pause(RELOAD_PAUSE_SECONDS)
        return self.start()

    def status(self) -> StatusReport:
        """对账登记表并返回各端口状态，失效记录会被清理"""
        listing = self.registry.list()
        for process in listing.inactive:
            self.launcher.forget(process)
        ports = [
            PortState(
                port=p.local_port,
                active=True,
                pid=p.pid,
                destination=p.rule.destination if p.rule else None,
                protocol=p.rule.protocol.value if p.rule else None,
            )
            for p in listing.active
        ]
        ports += [PortState(port=p.local_port, active=False) for p in listing.inactive]
        ports.sort(key=lambda s: s.port)

        registry_dir = getattr(self.registry, "directory", None)
        return StatusReport(
            ports=ports,
            ports_file=self.config.ports_file,
            logging_enabled=self.config.logging_enabled,
            log_file=self.log_file or self.config.log_file,
            run_as_user=self.config.run_as_user,
            auto_restart=self.config.auto_restart,
            registry_dir=str(registry_dir) if registry_dir is not None else None,
        )
