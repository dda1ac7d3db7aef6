"""
测试公共夹具

FakeLauncher 模拟转发进程（成功 / 启动即退出 / 不响应 SIGTERM），不启动真实进程。
"""

import itertools
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from port_forward import controller as controller_module
from port_forward.config import ForwardConfig
from port_forward.controller import LifecycleController
from port_forward.errors import ProcessAlreadyDead
from port_forward.launcher import Launcher
from port_forward.registry import MemoryRegistry, SupervisedProcess
from port_forward.reporter import Reporter
from port_forward.rules import ForwardRule, Protocol


class RecordingReporter(Reporter):
    """记录上报过的 (level, key, args)，供断言使用"""

    def __init__(self, lang: str = "en"):
        super().__init__(lang)
        self.records: List[Tuple[str, str, dict]] = []

    def report(self, level: str, key: str, **args) -> str:
        self.records.append((level, key, args))
        return super().report(level, key, **args)

    def keys(self, level: Optional[str] = None) -> List[str]:
        return [key for lvl, key, _ in self.records if level is None or lvl == level]


class FakeLauncher(Launcher):
    def __init__(
        self,
        failing_ports: Iterable[int] = (),
        busy_ports: Iterable[int] = (),
        stubborn_ports: Iterable[int] = (),
        check_ports: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ):
        super().__init__(check_ports=check_ports, cancel_event=cancel_event)
        self.failing_ports = set(failing_ports)
        self.busy_ports = set(busy_ports)
        self.stubborn_ports = set(stubborn_ports)
        self.alive: Dict[int, bool] = {}
        self.spawned: List[ForwardRule] = []
        self.signals: List[Tuple[int, str]] = []
        self.forgotten: List[int] = []
        self.on_spawn: Optional[Callable[[ForwardRule], None]] = None
        self._pids = itertools.count(1000)

    def port_in_use(self, port: int, protocol: Protocol) -> bool:
        return port in self.busy_ports

    def _wait(self, seconds: float) -> None:
        pass

    def _spawn(self, rule: ForwardRule) -> SupervisedProcess:
        pid = next(self._pids)
        self.spawned.append(rule)
        # 模拟目标地址错误等原因导致引擎立即退出
        self.alive[pid] = rule.local_port not in self.failing_ports
        if self.on_spawn is not None:
            self.on_spawn(rule)
        return SupervisedProcess(local_port=rule.local_port, pid=pid, started_at=time.time(), rule=rule)

    def is_alive(self, process: SupervisedProcess) -> bool:
        return self.alive.get(process.pid, False)

    def terminate(self, process: SupervisedProcess) -> None:
        if not self.is_alive(process):
            raise ProcessAlreadyDead(process.local_port, process.pid)
        self.signals.append((process.pid, "TERM"))
        if process.local_port not in self.stubborn_ports:
            self.alive[process.pid] = False

    def kill(self, process: SupervisedProcess) -> None:
        self.signals.append((process.pid, "KILL"))
        self.alive[process.pid] = False

    def forget(self, process: SupervisedProcess) -> None:
        self.forgotten.append(process.pid)

    def live_pids(self) -> List[int]:
        return [pid for pid, alive in self.alive.items() if alive]


@pytest.fixture(autouse=True)
def no_pauses(monkeypatch):
    monkeypatch.setattr(controller_module, "STOP_GRACE_SECONDS", 0)
    monkeypatch.setattr(controller_module, "RESTART_PAUSE_SECONDS", 0)
    monkeypatch.setattr(controller_module, "RELOAD_PAUSE_SECONDS", 0)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter("en")


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def registry(launcher: FakeLauncher) -> MemoryRegistry:
    return MemoryRegistry(probe=launcher.is_alive)


@pytest.fixture
def ports_file(tmp_path):
    path = tmp_path / "ports.conf"
    path.write_text("", encoding="utf-8")
    return path


@pytest.fixture
def config(ports_file, tmp_path) -> ForwardConfig:
    return ForwardConfig(
        ports_file=str(ports_file),
        registry_dir=str(tmp_path / "run"),
        fallback_registry_dir=str(tmp_path / "run-fallback"),
    )


@pytest.fixture
def make_controller(config, registry, launcher, reporter):
    def _make(**overrides) -> LifecycleController:
        params = dict(config=config, registry=registry, launcher=launcher, reporter=reporter)
        params.update(overrides)
        return LifecycleController(**params)

    return _make
