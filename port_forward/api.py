"""
FastAPI 控制接口

通过 HTTP 执行 start / stop / restart / reload / status，
供远程管理或面板调用。运行方式:
    port-forward serve
"""

import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from port_forward.controller import LifecycleController
from port_forward.errors import ConfigMissing, EngineNotFound
from port_forward.models import HealthResponse, StartResponse, StatusResponse, StopResponse

logger = logging.getLogger(__name__)


def get_controller(request: Request) -> LifecycleController:
    return request.app.state.controller


def verify_token(request: Request, authorization: Optional[str] = Header(None)) -> bool:
    """
    验证 Token

    未配置 token 时不校验；否则要求 "Authorization: Bearer <token>"

    Raises:
        HTTPException: Token 无效时抛出 401 错误
    """
    expected = request.app.state.token
    if not expected:
        return True

    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    if parts[1] != expected:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


def _run_start(action) -> StartResponse:
    try:
        return StartResponse.from_report(action())
    except ConfigMissing as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EngineNotFound as e:
        raise HTTPException(status_code=500, detail=str(e))


def create_app(controller: LifecycleController, token: Optional[str] = None) -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="Port Forward Manager",
        version="2.0.0",
        description="socat 端口转发管理接口",
    )
    app.state.controller = controller
    app.state.token = token

    @app.get("/v1/health", response_model=HealthResponse)
    def get_health(ctl: LifecycleController = Depends(get_controller)):
        """健康检查（无需认证）"""
        checks = {}
        overall_status = "ok"

        try:
            ctl.launcher.check_engine()
            checks["engine"] = "ok"
        except EngineNotFound:
            checks["engine"] = "missing"
            overall_status = "degraded"

        if os.access(ctl.config.ports_file, os.R_OK):
            checks["rules"] = "ok"
        else:
            checks["rules"] = "missing"
            overall_status = "degraded"

        return HealthResponse(status=overall_status, timestamp=datetime.utcnow(), checks=checks)

    @app.get("/v1/status", response_model=StatusResponse)
    def get_status(
        ctl: LifecycleController = Depends(get_controller),
        authorized: bool = Depends(verify_token),
    ):
        """获取各端口转发状态"""
        return StatusResponse.from_report(ctl.status())

    @app.post("/v1/start", response_model=StartResponse)
    def start(
        ctl: LifecycleController = Depends(get_controller),
        authorized: bool = Depends(verify_token),
    ):
        return _run_start(ctl.start)

    @app.post("/v1/stop", response_model=StopResponse)
    def stop(
        ctl: LifecycleController = Depends(get_controller),
        authorized: bool = Depends(verify_token),
    ):
        return StopResponse.from_report(ctl.stop())

    @app.post("/v1/restart", response_model=StartResponse)
    def restart(
        ctl: LifecycleController = Depends(get_controller),
        authorized: bool = Depends(verify_token),
    ):
        return _run_start(ctl.restart)

    @app.post("/v1/reload", response_model=StartResponse)
    def reload(
        ctl: LifecycleController = Depends(get_controller),
        authorized: bool = Depends(verify_token),
    ):
        return _run_start(ctl.reload)

    return app
