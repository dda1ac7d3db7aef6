"""
文本输出与日志上报

核心组件只依赖 report(level, key, **args)，不关心具体文案；
文案来自 locale/<lang>.json，缺失的 key 原样输出。
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

LOCALE_DIR = Path(__file__).parent / "locale"
DEFAULT_LANG = "en"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def detect_language(language: str, system_lang: Optional[str], locale_dir: Path = LOCALE_DIR) -> str:
    """
    确定输出语言

    Args:
        language: 配置值，auto 表示按系统 LANG 选择
        system_lang: 系统 LANG 环境变量，如 ru_RU.UTF-8

    Returns:
        语言代码；找不到对应文案文件时返回 en
    """
    if language and language.lower() != "auto":
        return language

    lang = (system_lang or "").split(".")[0].split("_")[0]
    if lang and (locale_dir / f"{lang}.json").exists():
        return lang
    return DEFAULT_LANG


def load_catalog(lang: str, locale_dir: Path = LOCALE_DIR) -> Dict[str, str]:
    catalog: Dict[str, str] = {}
    # 先加载英文作为兜底
    for code in dict.fromkeys([DEFAULT_LANG, lang]):
        path = locale_dir / f"{code}.json"
        if not path.exists():
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                catalog.update(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"failed to load locale {path}: {e}")
    return catalog


class Reporter:
    """按语言渲染文案并写入日志"""

    def __init__(self, lang: str = DEFAULT_LANG, locale_dir: Path = LOCALE_DIR):
        self.lang = lang
        self._catalog = load_catalog(lang, locale_dir)

    def text(self, key: str, **args) -> str:
        template = self._catalog.get(key, key)
        try:
            return template.format(**args)
        except (KeyError, IndexError, ValueError):
            return template

    def report(self, level: str, key: str, **args) -> str:
        """上报一条消息，返回渲染后的文本"""
        message = self.text(key, **args)
        logger.log(_LEVELS.get(level, logging.INFO), message)
        return message
