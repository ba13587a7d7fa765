#!/usr/bin/env python3
"""
Configuration for Print Guardian.

Values are read from a `.env` file next to the working directory (more
reliable than exported variables when started by a service manager) and
then overridden by the process environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from errors import ConfigError

DEFAULT_WEIGHTS_URL = "https://tsd-pub-static.s3.amazonaws.com/ml-models/model-weights-8be06cde4e.darknet"

PRINTER_ACTIONS = ("pause", "cancel", "none")
DETECTOR_BACKENDS = ("darknet", "clip")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass(frozen=True)
class Settings:
    image_urls: List[str]
    discord_webhook: str
    label_file: str = "./labels.txt"
    model_cfg: str = "./model.cfg"
    weights_file: str = "./model/model-weights.darknet"
    model_weights_url: str = DEFAULT_WEIGHTS_URL
    detector_backend: str = "darknet"
    objectness_threshold: float = 0.08
    class_prob_threshold: float = 0.5
    telegram_bot_token: str = ""
    telegram_chat_ids: List[int] = field(default_factory=list)
    moonraker_api_url: str = ""
    printer_action: str = "pause"
    check_interval: float = 10.0
    confirmation_count: int = 3
    miss_tolerance: int = 1
    clear_count: int = 3
    alert_cooldown: float = 300.0
    http_timeout: float = 10.0
    alert_retries: int = 3
    retry_backoff: float = 2.0
    max_fetch_failures: int = 15
    flip_image: bool = False
    output_dir: str = "./output"
    ready_file: str = ".ready"
    log_level: str = "INFO"


def read_env_file(path: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines, skipping blanks and comments."""
    values: Dict[str, str] = {}
    if not os.path.exists(path):
        return values
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def _float(values: Mapping[str, str], key: str, default: float) -> float:
    raw = values.get(key, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(key, f"expected a number, got {raw!r}")


def _int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(key, f"expected an integer, got {raw!r}")


def _bool(values: Mapping[str, str], key: str, default: bool) -> bool:
    raw = values.get(key, "").lower()
    if not raw:
        return default
    if raw in ("true", "1", "yes"):
        return True
    if raw in ("false", "0", "no"):
        return False
    raise ConfigError(key, "must be 'true' or 'false'")


def _threshold(values: Mapping[str, str], key: str, default: float) -> float:
    value = _float(values, key, default)
    if not 0.0 <= value <= 1.0:
        raise ConfigError(key, f"must be between 0 and 1, got {value}")
    return value


def _positive(value: float, key: str) -> None:
    if value <= 0:
        raise ConfigError(key, f"must be greater than zero, got {value}")


def _choice(values: Mapping[str, str], key: str, default: str, choices) -> str:
    value = values.get(key, "").strip().lower() or default
    if value not in choices:
        raise ConfigError(key, f"must be one of {', '.join(choices)}, got {value!r}")
    return value


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(',') if item.strip()]


def load_settings(env_file: str = ".env", environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the .env file and the environment.

    Raises:
        ConfigError: a required value is missing or a value is invalid.
    """
    values = read_env_file(env_file)
    values.update(os.environ if environ is None else environ)

    image_urls = _split_list(values.get("IMAGE_URL", ""))
    if not image_urls:
        raise ConfigError("IMAGE_URL", "at least one image source URL is required")

    discord_webhook = values.get("DISCORD_WEBHOOK", "").strip()
    if not discord_webhook:
        raise ConfigError("DISCORD_WEBHOOK", "environment variable is required")

    chat_ids: List[int] = []
    for raw_id in _split_list(values.get("TELEGRAM_CHAT_IDS", "")):
        try:
            chat_ids.append(int(raw_id))
        except ValueError:
            raise ConfigError("TELEGRAM_CHAT_IDS", f"invalid chat id {raw_id!r}")

    settings = Settings(
        image_urls=image_urls,
        discord_webhook=discord_webhook,
        label_file=values.get("LABEL_FILE") or Settings.label_file,
        model_cfg=values.get("MODEL_CFG") or Settings.model_cfg,
        weights_file=values.get("WEIGHTS_FILE") or Settings.weights_file,
        model_weights_url=values.get("MODEL_WEIGHTS_URL") or DEFAULT_WEIGHTS_URL,
        detector_backend=_choice(values, "DETECTOR_BACKEND", "darknet", DETECTOR_BACKENDS),
        objectness_threshold=_threshold(values, "OBJECTNESS_THRESHOLD", Settings.objectness_threshold),
        class_prob_threshold=_threshold(values, "CLASS_PROB_THRESHOLD", Settings.class_prob_threshold),
        telegram_bot_token=values.get("TELEGRAM_BOT_TOKEN", "").strip(),
        telegram_chat_ids=chat_ids,
        moonraker_api_url=values.get("MOONRAKER_API_URL", "").strip().rstrip('/'),
        printer_action=_choice(values, "PRINTER_ACTION", "pause", PRINTER_ACTIONS),
        check_interval=_float(values, "CHECK_INTERVAL", Settings.check_interval),
        confirmation_count=_int(values, "CONFIRMATION_COUNT", Settings.confirmation_count),
        miss_tolerance=_int(values, "MISS_TOLERANCE", Settings.miss_tolerance),
        clear_count=_int(values, "CLEAR_COUNT", Settings.clear_count),
        alert_cooldown=_float(values, "ALERT_COOLDOWN", Settings.alert_cooldown),
        http_timeout=_float(values, "HTTP_TIMEOUT", Settings.http_timeout),
        alert_retries=_int(values, "ALERT_RETRIES", Settings.alert_retries),
        retry_backoff=_float(values, "RETRY_BACKOFF", Settings.retry_backoff),
        max_fetch_failures=_int(values, "MAX_FETCH_FAILURES", Settings.max_fetch_failures),
        flip_image=_bool(values, "FLIP_IMAGE", False),
        output_dir=values.get("OUTPUT_DIR") or Settings.output_dir,
        ready_file=values.get("READY_FILE") or Settings.ready_file,
        log_level=_choice(values, "LOG_LEVEL", "info", LOG_LEVELS).upper(),
    )

    _positive(settings.check_interval, "CHECK_INTERVAL")
    _positive(settings.confirmation_count, "CONFIRMATION_COUNT")
    _positive(settings.clear_count, "CLEAR_COUNT")
    _positive(settings.http_timeout, "HTTP_TIMEOUT")
    _positive(settings.alert_retries, "ALERT_RETRIES")
    _positive(settings.max_fetch_failures, "MAX_FETCH_FAILURES")
    if settings.miss_tolerance < 0:
        raise ConfigError("MISS_TOLERANCE", "must not be negative")
    if settings.alert_cooldown < 0:
        raise ConfigError("ALERT_COOLDOWN", "must not be negative")
    if settings.retry_backoff < 0:
        raise ConfigError("RETRY_BACKOFF", "must not be negative")
    if settings.telegram_chat_ids and not settings.telegram_bot_token:
        raise ConfigError("TELEGRAM_BOT_TOKEN", "required when TELEGRAM_CHAT_IDS is set")
    return settings
