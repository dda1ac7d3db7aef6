"""
进程登记表

记录每个本地端口对应的转发进程（PID 及启动时间），
supervisor 重启后可据此重新找到自己启动的进程。

磁盘格式：目录下每个端口一个 port_<port>.pid 文件，内容为 JSON；
只包含数字 PID 的旧格式同样可读。
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import psutil

from port_forward.rules import ForwardRule

logger = logging.getLogger(__name__)

ENTRY_PREFIX = "port_"
ENTRY_SUFFIX = ".pid"
LOCK_SUFFIX = ".lock"

# 进程创建时间比对容差（秒）
CREATE_TIME_TOLERANCE = 1.0


@dataclass(frozen=True)
class SupervisedProcess:
    local_port: int
    pid: int
    started_at: Optional[float] = None
    rule: Optional[ForwardRule] = None

    def to_dict(self) -> dict:
        return {
            "local_port": self.local_port,
            "pid": self.pid,
            "started_at": self.started_at,
            "rule": self.rule.to_dict() if self.rule else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SupervisedProcess":
        rule = data.get("rule")
        return cls(
            local_port=int(data["local_port"]),
            pid=int(data["pid"]),
            started_at=data.get("started_at"),
            rule=ForwardRule.from_dict(rule) if rule else None,
        )


@dataclass
class RegistryListing:
    """list() 的对账结果：存活的进程与已清理的失效端口"""

    active: List[SupervisedProcess] = field(default_factory=list)
    inactive: List[SupervisedProcess] = field(default_factory=list)

    @property
    def active_count(self) -> int:
        return len(self.active)

    @property
    def inactive_count(self) -> int:
        return len(self.inactive)


def process_alive(process: SupervisedProcess) -> bool:
    """
    判断登记的进程是否仍在运行

    僵尸进程视为已退出；记录了启动时间时还要求创建时间一致，
    避免 PID 被复用后误判（以及误杀无关进程）。
    """
    if process.pid <= 0:
        return False
    try:
        proc = psutil.Process(process.pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if process.started_at is not None:
            return abs(proc.create_time() - process.started_at) <= CREATE_TIME_TOLERANCE
        return True
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # 进程存在但属于其他用户
        return True


class ProcessRegistry(ABC):
    """端口 -> SupervisedProcess 的登记表"""

    def __init__(self, probe: Callable[[SupervisedProcess], bool] = process_alive):
        self.probe = probe

    @abstractmethod
    def record(self, process: SupervisedProcess) -> None:
        ...

    @abstractmethod
    def lookup(self, port: int) -> Optional[SupervisedProcess]:
        ...

    @abstractmethod
    def remove(self, port: int) -> None:
        ...

    @abstractmethod
    def entries(self) -> List[SupervisedProcess]:
        """所有登记项（不检查存活），按端口排序"""

    @abstractmethod
    def lock(self, port: int):
        """单端口临界区，保证同一端口的 start/stop 不会并发执行"""

    def list(self) -> RegistryListing:
        listing = RegistryListing()
        for process in self.entries():
            if self.probe(process):
                listing.active.append(process)
            else:
                self.remove(process.local_port)
                listing.inactive.append(process)
        return listing


class MemoryRegistry(ProcessRegistry):
    """内存实现，用于测试或嵌入"""

    def __init__(self, probe: Callable[[SupervisedProcess], bool] = process_alive):
        super().__init__(probe)
        self._entries: Dict[int, SupervisedProcess] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def record(self, process: SupervisedProcess) -> None:
        self._entries[process.local_port] = process

    def lookup(self, port: int) -> Optional[SupervisedProcess]:
        return self._entries.get(port)

    def remove(self, port: int) -> None:
        self._entries.pop(port, None)

    def entries(self) -> List[SupervisedProcess]:
        return [self._entries[port] for port in sorted(self._entries)]

    @contextmanager
    def lock(self, port: int) -> Iterator[None]:
        with self._guard:
            port_lock = self._locks.setdefault(port, threading.Lock())
        with port_lock:
            yield


def _ensure_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return os.access(path, os.W_OK | os.X_OK)


def resolve_registry_dir(primary: str, fallback: str) -> Path:
    """主目录不可写时退回备用目录（如非 root 运行时 /run 不可写）"""
    primary_path = Path(primary)
    if _ensure_writable_dir(primary_path):
        return primary_path

    fallback_path = Path(fallback)
    logger.debug(f"registry dir {primary_path} is not writable, using {fallback_path}")
    fallback_path.mkdir(parents=True, exist_ok=True)
    return fallback_path


class FileRegistry(ProcessRegistry):
    """基于目录的持久化登记表"""

    def __init__(self, directory: Path, probe: Callable[[SupervisedProcess], bool] = process_alive):
        super().__init__(probe)
        self.directory = Path(directory)

    @classmethod
    def open(cls, primary: str, fallback: str, probe: Callable[[SupervisedProcess], bool] = process_alive):
        return cls(resolve_registry_dir(primary, fallback), probe)

    def _entry_path(self, port: int) -> Path:
        return self.directory / f"{ENTRY_PREFIX}{port}{ENTRY_SUFFIX}"

    def record(self, process: SupervisedProcess) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._entry_path(process.local_port)
        # 先写临时文件再 rename，读者不会看到半写入的记录
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(process.to_dict(), f)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read(self, path: Path, port: int) -> Optional[SupervisedProcess]:
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"cannot read registry entry {path}: {e}")
            return SupervisedProcess(local_port=port, pid=0)

        if content.isdigit():
            return SupervisedProcess(local_port=port, pid=int(content))
        try:
            data = json.loads(content)
            data["local_port"] = port
            return SupervisedProcess.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            # 损坏的记录按失效处理，由对账流程清理
            logger.warning(f"corrupt registry entry {path}: {e}")
            return SupervisedProcess(local_port=port, pid=0)

    def lookup(self, port: int) -> Optional[SupervisedProcess]:
        return self._read(self._entry_path(port), port)

    def remove(self, port: int) -> None:
        try:
            self._entry_path(port).unlink()
        except FileNotFoundError:
            pass

    def entries(self) -> List[SupervisedProcess]:
        if not self.directory.is_dir():
            return []
        result = []
        for path in self.directory.glob(f"{ENTRY_PREFIX}*{ENTRY_SUFFIX}"):
            port_text = path.name[len(ENTRY_PREFIX):-len(ENTRY_SUFFIX)]
            if not port_text.isdigit():
                continue
            process = self._read(path, int(port_text))
            if process is not None:
                result.append(process)
        return sorted(result, key=lambda p: p.local_port)

    def _acquire(self, lock_path: Path):
        while True:
            handle = open(lock_path, "a+b")
            fcntl.flock(handle, fcntl.LOCK_EX)
            # 等待期间文件可能已被上一个持有者删除，需要在新文件上重新加锁
            try:
                if os.stat(lock_path).st_ino == os.fstat(handle.fileno()).st_ino:
                    return handle
            except FileNotFoundError:
                pass
            handle.close()

    @contextmanager
    def lock(self, port: int) -> Iterator[None]:
        """
        端口级文件锁

        端口没有登记项时，释放前删除锁文件，目录中不会堆积已停用端口的锁。
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        lock_path = self.directory / f"{ENTRY_PREFIX}{port}{LOCK_SUFFIX}"
        handle = self._acquire(lock_path)
        try:
            yield
        finally:
            try:
                if not self._entry_path(port).exists():
                    lock_path.unlink(missing_ok=True)
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)
                handle.close()
