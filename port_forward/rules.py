"""
转发规则解析

规则文件每行一条，支持两种格式：
    <local_port> <host:port> [tcp|udp]
    <local_port> <host> <port> [tcp|udp]

# 之后的内容为注释。单行错误只产生警告并跳过，不影响其余行。
"""

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from port_forward.errors import ConfigMissing
from port_forward.reporter import Reporter

# 格式 1: <local_port> <host:port> [proto]
_HOSTPORT_RE = re.compile(r"^(\d+)\s+(\S+):(\d+)(?:\s+(tcp|udp))?$", re.IGNORECASE)
# 格式 2: <local_port> <host> <port> [proto]
_SPLIT_RE = re.compile(r"^(\d+)\s+(\S+)\s+(\d+)(?:\s+(tcp|udp))?$", re.IGNORECASE)


class Protocol(str, enum.Enum):
    TCP = "tcp"
    UDP = "udp"


@dataclass(frozen=True)
class ForwardRule:
    """一条转发规则，local_port 在规则集中唯一"""

    local_port: int
    destination_host: str
    destination_port: int
    protocol: Protocol = Protocol.TCP

    @property
    def destination(self) -> str:
        return f"{self.destination_host}:{self.destination_port}"

    def to_dict(self) -> dict:
        return {
            "local_port": self.local_port,
            "destination_host": self.destination_host,
            "destination_port": self.destination_port,
            "protocol": self.protocol.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ForwardRule":
        return cls(
            local_port=int(data["local_port"]),
            destination_host=str(data["destination_host"]),
            destination_port=int(data["destination_port"]),
            protocol=Protocol(data.get("protocol", "tcp")),
        )


@dataclass
class ParseWarning:
    number: int
    text: str
    key: str


@dataclass
class ParseResult:
    rules: Dict[int, ForwardRule] = field(default_factory=dict)
    warnings: List[ParseWarning] = field(default_factory=list)


def _valid_port(value: int) -> bool:
    return 1 <= value <= 65535


def parse_rules(lines: Iterable[str], reporter: Optional[Reporter] = None) -> ParseResult:
    """
    解析规则文本

    Args:
        lines: 规则文件的各行
        reporter: 用于上报单行警告，可为空

    Returns:
        ParseResult，rules 以 local_port 为 key，重复端口以后出现的为准
    """
    result = ParseResult()

    def _warn(number: int, text: str, key: str, **args):
        result.warnings.append(ParseWarning(number=number, text=text, key=key))
        if reporter is not None:
            reporter.report("warning", key, text=text, number=number, **args)

    for number, raw in enumerate(lines, start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue

        match = _HOSTPORT_RE.match(line) or _SPLIT_RE.match(line)
        if match is None:
            _warn(number, line, "invalid_line")
            continue

        local_port = int(match.group(1))
        host = match.group(2)
        dest_port = int(match.group(3))
        proto = Protocol((match.group(4) or "tcp").lower())

        if not _valid_port(local_port):
            _warn(number, line, "invalid_port", port=local_port)
            continue
        if not _valid_port(dest_port):
            _warn(number, line, "invalid_port", port=dest_port)
            continue

        result.rules[local_port] = ForwardRule(
            local_port=local_port,
            destination_host=host,
            destination_port=dest_port,
            protocol=proto,
        )

    return result


def load_rules(path: str, reporter: Optional[Reporter] = None) -> ParseResult:
    """读取规则文件；文件不存在或不可读时抛出 ConfigMissing"""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigMissing(path) from None
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigMissing(path, str(e)) from e
    return parse_rules(text.splitlines(), reporter)
