"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from .types import (
    ChatConfig,
    DeepDiveChatConfig,
    DeepDiveConfig,
    LoggingConfig,
    ServerConfig,
    StorageConfig,
    SummarizationConfig,
    UpstreamConfig,
)

CONFIG_ENV_VAR = "DEEPDIVE_CHAT_CONFIG"

CONFIG_FILENAMES = [
    "deepdive-chat.yaml",
    "deepdive-chat.yml",
    "deepdive-chat.json",
]


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    return value if isinstance(value, dict) else {}


def _build_config(raw: dict[str, Any]) -> DeepDiveChatConfig:
    """Build a DeepDiveChatConfig from a raw dict."""
    up_raw = _section(raw, "upstream")
    upstream = UpstreamConfig(
        base_url=up_raw.get("base_url", UpstreamConfig.base_url),
        model=up_raw.get("model", UpstreamConfig.model),
        api_key_env=up_raw.get("api_key_env", UpstreamConfig.api_key_env),
        api_key=up_raw.get("api_key") or "",
        referer=up_raw.get("referer", UpstreamConfig.referer),
        title=up_raw.get("title", UpstreamConfig.title),
        timeout=float(up_raw.get("timeout", UpstreamConfig.timeout)),
    )

    chat_raw = _section(raw, "chat")
    chat = ChatConfig(
        temperature=chat_raw.get("temperature", 0.8),
        max_tokens=chat_raw.get("max_tokens", 4096),
        title_max_chars=chat_raw.get("title_max_chars", 32),
    )

    summ_raw = _section(raw, "summarization")
    summarization = SummarizationConfig(
        temperature=summ_raw.get("temperature", 0.5),
        max_tokens=summ_raw.get("max_tokens", 256),
    )

    dive_raw = _section(raw, "deep_dive")
    deep_dive = DeepDiveConfig(
        generate_opening=dive_raw.get("generate_opening", True),
        temperature=dive_raw.get("temperature", 0.8),
        max_tokens=dive_raw.get("max_tokens", 512),
    )

    storage = StorageConfig(root=_section(raw, "storage").get("root", "sessions"))

    server_raw = _section(raw, "server")
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 3000)),
    )

    logging_config = LoggingConfig(
        level=str(_section(raw, "logging").get("level", "INFO")).upper(),
    )

    return DeepDiveChatConfig(
        version=str(raw.get("version", "1.0")),
        upstream=upstream,
        chat=chat,
        summarization=summarization,
        deep_dive=deep_dive,
        storage=storage,
        server=server,
        logging=logging_config,
    )


def validate_config(config: DeepDiveChatConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.upstream.base_url:
        errors.append("upstream.base_url must not be empty")
    if not config.upstream.model:
        errors.append("upstream.model must not be empty")
    if config.upstream.timeout <= 0:
        errors.append("upstream.timeout must be > 0")

    for name, temperature in (
        ("chat", config.chat.temperature),
        ("summarization", config.summarization.temperature),
        ("deep_dive", config.deep_dive.temperature),
    ):
        if not 0 <= temperature <= 2:
            errors.append(f"{name}.temperature ({temperature}) must be between 0 and 2")

    for name, max_tokens in (
        ("chat", config.chat.max_tokens),
        ("summarization", config.summarization.max_tokens),
        ("deep_dive", config.deep_dive.max_tokens),
    ):
        if max_tokens < 1:
            errors.append(f"{name}.max_tokens must be >= 1")

    if config.chat.title_max_chars < 1:
        errors.append("chat.title_max_chars must be >= 1")

    if not 0 < config.server.port < 65536:
        errors.append(f"server.port ({config.server.port}) is out of range")

    if not config.storage.root:
        errors.append("storage.root must not be empty")

    return errors


def resolve_api_key(config: DeepDiveChatConfig) -> str:
    """Explicit key from config, else the configured env var (``.env`` honoured)."""
    if config.upstream.api_key:
        return config.upstream.api_key
    load_dotenv(find_dotenv(usecwd=True))
    return os.environ.get(config.upstream.api_key_env, "")


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> DeepDiveChatConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
