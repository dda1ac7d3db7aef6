"""
Port Forward Manager 命令行入口

使用方式:
    port-forward [--config PATH] {start|stop|restart|status|reload|help|serve}

不带命令时执行 start。
"""

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer

from port_forward.config import DEFAULT_CONFIG_PATH, ForwardConfig, load_config
from port_forward.controller import LifecycleController, StatusReport
from port_forward.errors import ConfigMissing, EngineNotFound
from port_forward.launcher import SocatLauncher
from port_forward.models import StatusResponse
from port_forward.registry import FileRegistry
from port_forward.reporter import Reporter, detect_language

logger = logging.getLogger(__name__)

FALLBACK_LOG_FILE = "/tmp/port-forward.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

app = typer.Typer(
    name="port-forward",
    help="Universal TCP/UDP port forwarding manager using socat",
    add_completion=False,
)


def _open_log_file(path: str) -> Optional[logging.Handler]:
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, encoding="utf-8")
    except OSError:
        return None


def setup_logging(config: ForwardConfig) -> Optional[str]:
    """
    配置日志

    控制台始终输出；logging_enabled 时同时写入日志文件，
    目录不可写时退回 /tmp/port-forward.log，仍不可写则只输出到控制台。

    Returns:
        实际使用的日志文件路径，未写文件时为 None
    """
    level = logging.DEBUG if config.debug else logging.INFO

    logging.basicConfig(
        level=level,
        format=CONSOLE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    if not config.logging_enabled:
        return None

    log_file = config.log_file
    file_handler = _open_log_file(log_file)
    if file_handler is None and log_file != FALLBACK_LOG_FILE:
        logger.warning(f"cannot write log file {log_file}, using {FALLBACK_LOG_FILE}")
        log_file = FALLBACK_LOG_FILE
        file_handler = _open_log_file(log_file)
    if file_handler is None:
        logger.warning(f"cannot write log file {log_file}, file logging disabled")
        return None

    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
    return log_file


def build_controller(
    config: ForwardConfig,
    reporter: Reporter,
    cancel_event: threading.Event,
    log_file: Optional[str] = None,
) -> LifecycleController:
    registry = FileRegistry.open(config.registry_dir, config.fallback_registry_dir)
    launcher = SocatLauncher.from_config(config, log_file=log_file, cancel_event=cancel_event)
    return LifecycleController(
        config=config,
        registry=registry,
        launcher=launcher,
        reporter=reporter,
        cancel_event=cancel_event,
        log_file=log_file,
    )


class CliState:
    def __init__(self, config_path: str, debug: bool):
        self.config_path = config_path
        self.debug = debug
        self.cancel_event = threading.Event()
        self._config: Optional[ForwardConfig] = None
        self._reporter: Optional[Reporter] = None
        self._controller: Optional[LifecycleController] = None

    @property
    def config(self) -> ForwardConfig:
        if self._config is None:
            self._config = load_config(self.config_path, debug=True if self.debug else None)
        return self._config

    @property
    def reporter(self) -> Reporter:
        if self._reporter is None:
            self._reporter = Reporter(detect_language(self.config.language, os.environ.get("LANG")))
        return self._reporter

    @property
    def controller(self) -> LifecycleController:
        if self._controller is None:
            log_file = setup_logging(self.config)
            self._controller = build_controller(self.config, self.reporter, self.cancel_event, log_file)
        return self._controller

    def install_signal_handlers(self) -> None:
        """SIGINT/SIGTERM 只设置取消标志，由控制器走统一的 stop 流程"""

        def _handler(signum, frame):
            self.cancel_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _run_start_action(state: CliState, action: str) -> None:
    controller = state.controller
    state.install_signal_handlers()
    try:
        getattr(controller, action)()
    except (ConfigMissing, EngineNotFound):
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Annotated[
        str,
        typer.Option("--config", "-c", help="Main configuration file", envvar="PORT_FORWARD_CONFIG"),
    ] = DEFAULT_CONFIG_PATH,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug logging", envvar="DEBUG"),
    ] = False,
):
    """
    Port Forward Manager.

    Without a command, starts all configured forwards.
    """
    ctx.obj = CliState(config, debug)
    if ctx.invoked_subcommand is None:
        _run_start_action(ctx.obj, "start")


@app.command()
def start(ctx: typer.Context):
    """Start port forwarding."""
    _run_start_action(_state(ctx), "start")


@app.command()
def stop(ctx: typer.Context):
    """Stop port forwarding."""
    state = _state(ctx)
    state.controller.stop()


@app.command()
def restart(ctx: typer.Context):
    """Restart port forwarding."""
    _run_start_action(_state(ctx), "restart")


@app.command()
def reload(ctx: typer.Context):
    """Reload configuration."""
    _run_start_action(_state(ctx), "reload")


def render_status(report: StatusReport, reporter: Reporter) -> str:
    t = reporter.text
    lines = [
        f"=== {t('port_forward_status')} ===",
        f"{t('config_file')}: {report.ports_file}",
        f"{t('logging_enabled')}: {str(report.logging_enabled).lower()}",
        f"{t('running_as_user')}: {report.run_as_user}",
        f"{t('log_file')}: {report.log_file}",
        f"{t('registry_dir')}: {report.registry_dir}",
        f"{t('auto_restart')}: {str(report.auto_restart).lower()}",
        "",
    ]
    if not report.ports:
        lines.append(t("service_not_running"))
    for p in report.ports:
        if p.active:
            lines.append(f"✅ {t('port')}: {p.port} - {t('pid')}: {p.pid} ({t('status_active')})")
        else:
            lines.append(f"❌ {t('port')}: {p.port} ({t('status_inactive')})")
    lines += [
        "",
        f"{t('active_ports')}: {report.active_count}",
        f"{t('inactive_ports')}: {report.inactive_count}",
    ]
    return "\n".join(lines)


@app.command()
def status(
    ctx: typer.Context,
    as_json: Annotated[bool, typer.Option("--json", help="Print status as JSON")] = False,
):
    """Show forwarding status."""
    state = _state(ctx)
    report = state.controller.status()
    if as_json:
        typer.echo(StatusResponse.from_report(report).model_dump_json(indent=2))
    else:
        typer.echo(render_status(report, state.reporter))


def render_help(reporter: Reporter, config_path: str, ports_file: str) -> str:
    t = reporter.text
    commands = ["start", "stop", "restart", "status", "reload", "help", "serve"]
    lines = [
        f"{t('app_name')} v2.0 - {t('app_description')}",
        "",
        f"{t('usage')}: port-forward {{{'|'.join(commands)}}}",
        "",
        f"{t('commands')}:",
    ]
    lines += [f"  {name:<8} - {t(f'cmd_{name}_help')}" for name in commands]
    lines += [
        "",
        f"{t('config_files')}:",
        f"  {config_path}    - {t('main_config_file')}",
        f"  {ports_file}     - {t('ports_config_file')}",
    ]
    return "\n".join(lines)


@app.command("help")
def help_(ctx: typer.Context):
    """Show this help."""
    state = _state(ctx)
    typer.echo(render_help(state.reporter, state.config_path, state.config.ports_file))


@app.command()
def serve(ctx: typer.Context):
    """Run the HTTP control API."""
    import uvicorn

    from port_forward.api import create_app

    state = _state(ctx)
    config = state.config
    api = create_app(state.controller, token=config.api.token)
    logger.info(f"Control API listening on {config.api.listen}")
    uvicorn.run(api, host=config.api.host, port=config.api.port, log_level="info", access_log=False)
