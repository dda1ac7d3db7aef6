"""
数据模型定义

使用 Pydantic 定义 API 响应与 status --json 的输出结构
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from port_forward.controller import StartReport, StatusReport, StopReport


class PortStatus(BaseModel):
    """单个端口的转发状态"""
    port: int = Field(..., description="本地端口")
    state: Literal["active", "inactive"] = Field(..., description="状态")
    pid: Optional[int] = Field(None, description="转发进程 PID")
    destination: Optional[str] = Field(None, description="目标地址 host:port")
    protocol: Optional[str] = Field(None, description="tcp|udp")


class StatusResponse(BaseModel):
    """状态响应"""
    ports: List[PortStatus] = Field(default_factory=list)
    active_count: int = 0
    inactive_count: int = 0
    ports_file: str
    logging_enabled: bool
    log_file: Optional[str] = None
    run_as_user: str
    auto_restart: bool
    registry_dir: Optional[str] = None

    @classmethod
    def from_report(cls, report: StatusReport) -> "StatusResponse":
        return cls(
            ports=[
                PortStatus(
                    port=p.port,
                    state="active" if p.active else "inactive",
                    pid=p.pid,
                    destination=p.destination,
                    protocol=p.protocol,
                )
                for p in report.ports
            ],
            active_count=report.active_count,
            inactive_count=report.inactive_count,
            ports_file=report.ports_file,
            logging_enabled=report.logging_enabled,
            log_file=report.log_file,
            run_as_user=report.run_as_user,
            auto_restart=report.auto_restart,
            registry_dir=report.registry_dir,
        )


class StartResponse(BaseModel):
    """start / restart / reload 响应"""
    started: List[int] = Field(default_factory=list)
    already_running: List[int] = Field(default_factory=list)
    failed: Dict[int, str] = Field(default_factory=dict)
    cancelled: bool = False

    @classmethod
    def from_report(cls, report: StartReport) -> "StartResponse":
        return cls(**report.__dict__)


class StopResponse(BaseModel):
    """stop 响应"""
    stopped: List[int] = Field(default_factory=list)
    force_stopped: List[int] = Field(default_factory=list)
    already_dead: List[int] = Field(default_factory=list)
    errors: Dict[int, str] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: StopReport) -> "StopResponse":
        return cls(**report.__dict__)


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态: ok|degraded")
    timestamp: datetime = Field(..., description="检查时间")
    checks: Dict[str, str] = Field(..., description="各组件检查结果")
