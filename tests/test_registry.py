"""
测试进程登记表

覆盖：
- 文件登记表的记录 / 查询 / 删除
- list() 对账：失效记录被清理并以 inactive 返回
- 旧格式与损坏的记录
- 主目录不可写时退回备用目录
- psutil 存活检测（PID 复用）
- 端口锁：同一端口互斥，不同端口互不阻塞
"""

import os
import threading

import psutil
import pytest

from port_forward.registry import (
    FileRegistry,
    MemoryRegistry,
    SupervisedProcess,
    process_alive,
    resolve_registry_dir,
)
from port_forward.rules import ForwardRule, Protocol


@pytest.fixture
def rule() -> ForwardRule:
    return ForwardRule(8080, "10.0.0.1", 80, Protocol.TCP)


@pytest.fixture
def alive_pids():
    return set()


@pytest.fixture
def file_registry(tmp_path, alive_pids) -> FileRegistry:
    return FileRegistry(tmp_path / "run", probe=lambda p: p.pid in alive_pids)


def test_record_lookup_remove(file_registry: FileRegistry, rule: ForwardRule):
    process = SupervisedProcess(local_port=8080, pid=4321, started_at=1700000000.5, rule=rule)

    file_registry.record(process)

    assert (file_registry.directory / "port_8080.pid").exists()
    assert file_registry.lookup(8080) == process
    assert file_registry.entries() == [process]

    file_registry.remove(8080)
    assert file_registry.lookup(8080) is None
    assert file_registry.entries() == []
    # 重复删除不报错
    file_registry.remove(8080)


def test_list_reports_active_and_cleans_inactive(file_registry: FileRegistry, alive_pids, rule):
    file_registry.record(SupervisedProcess(local_port=8080, pid=100, rule=rule))
    file_registry.record(SupervisedProcess(local_port=9000, pid=200))
    alive_pids.add(100)

    listing = file_registry.list()

    assert [p.local_port for p in listing.active] == [8080]
    assert [p.local_port for p in listing.inactive] == [9000]
    assert listing.active_count == 1
    assert listing.inactive_count == 1
    assert not (file_registry.directory / "port_9000.pid").exists()
    assert (file_registry.directory / "port_8080.pid").exists()


def test_legacy_plain_pid_entry_is_readable(file_registry: FileRegistry):
    file_registry.directory.mkdir(parents=True)
    (file_registry.directory / "port_2277.pid").write_text("12345\n")

    process = file_registry.lookup(2277)

    assert process == SupervisedProcess(local_port=2277, pid=12345)


def test_corrupt_entry_is_treated_as_dead(tmp_path):
    registry = FileRegistry(tmp_path / "run")
    registry.directory.mkdir(parents=True)
    (registry.directory / "port_2277.pid").write_text("{not json")

    listing = registry.list()

    assert [p.local_port for p in listing.inactive] == [2277]
    assert registry.entries() == []


def test_unrelated_files_are_ignored(file_registry: FileRegistry):
    file_registry.directory.mkdir(parents=True)
    (file_registry.directory / "port_abc.pid").write_text("1")
    (file_registry.directory / "other.pid").write_text("1")
    with file_registry.lock(8080):
        pass

    assert file_registry.entries() == []
    assert (file_registry.directory / "other.pid").exists()


def test_lock_file_removed_once_port_has_no_entry(file_registry: FileRegistry, rule):
    lock_path = file_registry.directory / "port_8080.lock"

    with file_registry.lock(8080):
        file_registry.record(SupervisedProcess(local_port=8080, pid=100, rule=rule))
    # 进程仍在登记中，锁文件保留
    assert lock_path.exists()

    with file_registry.lock(8080):
        file_registry.remove(8080)

    assert not lock_path.exists()
    assert list(file_registry.directory.iterdir()) == []


def test_registry_dir_falls_back_when_primary_unusable(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    fallback = tmp_path / "fallback"

    resolved = resolve_registry_dir(str(blocker / "run"), str(fallback))

    assert resolved == fallback
    assert fallback.is_dir()


def test_registry_dir_uses_primary_when_writable(tmp_path):
    resolved = resolve_registry_dir(str(tmp_path / "run"), str(tmp_path / "fallback"))

    assert resolved == tmp_path / "run"
    assert not (tmp_path / "fallback").exists()


def test_memory_registry_list(rule):
    alive = {1}
    registry = MemoryRegistry(probe=lambda p: p.pid in alive)
    registry.record(SupervisedProcess(local_port=8080, pid=1, rule=rule))
    registry.record(SupervisedProcess(local_port=7070, pid=2))

    listing = registry.list()

    assert [p.pid for p in listing.active] == [1]
    assert [p.pid for p in listing.inactive] == [2]
    assert registry.lookup(7070) is None


def test_process_alive_checks_create_time():
    me = psutil.Process(os.getpid())
    started_at = me.create_time()

    assert process_alive(SupervisedProcess(local_port=1, pid=os.getpid(), started_at=started_at))
    assert process_alive(SupervisedProcess(local_port=1, pid=os.getpid()))
    # 同一 PID 但启动时间不同，视为已被复用
    assert not process_alive(SupervisedProcess(local_port=1, pid=os.getpid(), started_at=started_at - 3600))
    assert not process_alive(SupervisedProcess(local_port=1, pid=0))


@pytest.fixture(params=["file", "memory"])
def any_registry(request, tmp_path):
    if request.param == "file":
        return FileRegistry(tmp_path / "run")
    return MemoryRegistry()


def _enter_lock(registry, port: int, acquired: threading.Event) -> threading.Thread:
    def worker():
        with registry.lock(port):
            acquired.set()

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    return thread


def test_lock_blocks_same_port_only(any_registry):
    held = threading.Event()
    release = threading.Event()

    def holder():
        with any_registry.lock(8080):
            held.set()
            release.wait(5)

    holder_thread = threading.Thread(target=holder, daemon=True)
    holder_thread.start()
    assert held.wait(5)

    other_port = threading.Event()
    same_port = threading.Event()
    other_thread = _enter_lock(any_registry, 8081, other_port)
    same_thread = _enter_lock(any_registry, 8080, same_port)

    # 不同端口立即获得锁，同一端口需等待
    assert other_port.wait(5)
    assert not same_port.wait(0.3)

    release.set()
    assert same_port.wait(5)

    for thread in (holder_thread, other_thread, same_thread):
        thread.join(5)
