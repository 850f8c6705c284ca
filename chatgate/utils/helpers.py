"""通用小工具。"""

import re
from datetime import datetime, timezone
from pathlib import Path

_WHITESPACE = re.compile(r"\s+")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """~/.chatgate"""
    return ensure_dir(Path.home() / ".chatgate")


def get_credentials_path() -> Path:
    return ensure_dir(get_data_path() / "credentials")


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def preview_text(text: str, max_len: int = 160) -> str:
    """折叠空白后截断，用于日志与系统事件摘要。"""
    return _WHITESPACE.sub(" ", text).strip()[:max_len]


def safe_filename(name: str) -> str:
    unsafe = '<>:"/\\|?*'
    for char in unsafe:
        name = name.replace(char, "_")
    return name.strip()


def to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def format_envelope_timestamp(ts: datetime) -> str:
    """2026-01-05T09:30Z"""
    return to_utc(ts).strftime("%Y-%m-%dT%H:%MZ")


def parse_timestamp(value: object) -> datetime | None:
    """解析 ISO 字符串、datetime 或毫秒/秒级时间戳；失败返回 None。"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        num = float(value)
        # 飞书 create_time 为毫秒
        if num > 1e11:
            num /= 1000
        try:
            return datetime.fromtimestamp(num, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def utf16_len(text: str) -> int:
    """UTF-16 码元数；BMP 之外的字符（emoji 等）计 2。"""
    return len(text.encode("utf-16-le")) // 2
