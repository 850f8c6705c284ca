"""配置加载。"""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from chatgate.config.schema import Config

# 这些映射的键是渠道侧 ID（team/channel/group），不能做驼峰转换
_ID_KEYED_SCOPES = {
    "channels.msteams.teams",
    "channels.msteams.teams.*.channels",
    "channels.feishu.groups",
    "channels.telegram.groups",
}


def get_config_path() -> Path:
    return Path.home() / ".chatgate" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """读取 JSON 配置；文件不存在或格式错误时返回默认配置。"""
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}. Using default configuration.")

    return Config()


def convert_keys(data: Any, scope: str = "") -> Any:
    """camelCase -> snake_case，按作用域跳过 ID 键映射。"""
    if isinstance(data, dict):
        if scope in _ID_KEYED_SCOPES:
            return {k: convert_keys(v, f"{scope}.*") for k, v in data.items()}
        converted = {}
        for k, v in data.items():
            key = camel_to_snake(k)
            converted[key] = convert_keys(v, f"{scope}.{key}" if scope else key)
        return converted
    if isinstance(data, list):
        return [convert_keys(item, scope) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)
