from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

from sitewatch.dashboard import DEFAULT_DATA_URL
from sitewatch.domain import Area, ConfigError


def _parse_csv(raw: str) -> list[str]:
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _parse_telegram_chat_ids(raw: str) -> tuple[str, ...]:
    # TELEGRAM_CHAT_ID supports a single value or a comma-separated list.
    # Examples:
    #   TELEGRAM_CHAT_ID=123456789
    #   TELEGRAM_CHAT_ID=123456789,-1001234567890
    seen: set[str] = set()
    result: list[str] = []
    for p in _parse_csv(raw):
        # Telegram allows numeric IDs; groups/supergroups can be negative.
        try:
            int(p)
        except ValueError as e:
            raise ConfigError(f"Invalid TELEGRAM_CHAT_ID value: {p!r}. Expected integer chat id.") from e

        if p == "0":
            raise ConfigError("Invalid TELEGRAM_CHAT_ID value: '0' is not a valid chat id")

        if p in seen:
            continue
        seen.add(p)
        result.append(p)

    if not result:
        raise ConfigError("TELEGRAM_CHAT_ID is empty. Provide at least one chat id.")

    return tuple(result)


def _parse_phone_numbers(raw: str) -> tuple[str, ...]:
    # Keeps first occurrence order, drops duplicates.
    result = tuple(dict.fromkeys(_parse_csv(raw)))
    if not result:
        raise ConfigError("TWILIO_TO is empty. Provide at least one phone number.")
    return result


def _parse_data_urls(raw: str) -> tuple[str, ...]:
    # DATA_URL supports a single feed or a comma-separated list; empty means the default feed.
    return tuple(dict.fromkeys(_parse_csv(raw))) or (DEFAULT_DATA_URL,)


def _parse_areas(raw: str) -> frozenset[Area]:
    try:
        return frozenset(Area.from_cli_name(p) for p in _parse_csv(raw))
    except ValueError as e:
        choices = ", ".join(a.cli_name for a in Area)
        raise ConfigError(f"Invalid AREAS value: {e}. Choose from: {choices}") from e


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in {"", "0", "false", "no"}


@dataclass(frozen=True)
class TwilioSettings:
    account_sid: str
    auth_token: str
    sms_from: str
    sms_to: tuple[str, ...]


@dataclass(frozen=True)
class Settings:
    # Feeds merged into one snapshot, in priority order.
    data_urls: tuple[str, ...] = (DEFAULT_DATA_URL,)

    # Empty means every area.
    areas: frozenset[Area] = frozenset()
    site_filter: str | None = None

    check_interval_seconds: float = 1.0

    # How many times a snapshot fetch is attempted per cycle.
    fetch_retry_attempts: int = 2

    # None means deliver to every recipient at once.
    max_concurrent_deliveries: int | None = None

    shorten_urls: bool = False

    telegram_bot_token: str | None = None
    telegram_chat_ids: tuple[str, ...] = ()

    twilio: TwilioSettings | None = None

    log_level: str = "INFO"


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _load_twilio() -> TwilioSettings | None:
    names = ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM", "TWILIO_TO")
    values = {name: os.getenv(name, "").strip() for name in names}
    if not any(values.values()):
        return None

    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigError(f"Incomplete Twilio configuration, missing: {', '.join(missing)}")

    return TwilioSettings(
        account_sid=values["TWILIO_ACCOUNT_SID"],
        auth_token=values["TWILIO_AUTH_TOKEN"],
        sms_from=values["TWILIO_FROM"],
        sms_to=_parse_phone_numbers(values["TWILIO_TO"]),
    )


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    raw_interval = os.getenv("CHECK_INTERVAL_SECONDS", "1")
    try:
        check_interval_seconds = float(raw_interval)
    except ValueError as e:
        raise ConfigError(f"CHECK_INTERVAL_SECONDS must be a number, got {raw_interval!r}") from e
    if check_interval_seconds <= 0:
        raise ConfigError("CHECK_INTERVAL_SECONDS must be > 0")

    fetch_retry_attempts = _int_env("FETCH_RETRY_ATTEMPTS", "2")
    if fetch_retry_attempts < 1:
        raise ConfigError("FETCH_RETRY_ATTEMPTS must be >= 1")

    max_concurrent_deliveries: int | None = None
    if os.getenv("MAX_CONCURRENT_DELIVERIES", "").strip():
        max_concurrent_deliveries = _int_env("MAX_CONCURRENT_DELIVERIES", "")
        if max_concurrent_deliveries < 1:
            raise ConfigError("MAX_CONCURRENT_DELIVERIES must be >= 1")

    site_filter = os.getenv("SITE_FILTER") or None
    if site_filter is not None:
        try:
            re.compile(site_filter)
        except re.error as e:
            raise ConfigError(f"Invalid SITE_FILTER pattern {site_filter!r}: {e}") from e

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN") or None
    raw_chat_ids = os.getenv("TELEGRAM_CHAT_ID")
    if bool(telegram_bot_token) != bool(raw_chat_ids):
        raise ConfigError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set together")
    telegram_chat_ids = _parse_telegram_chat_ids(raw_chat_ids) if raw_chat_ids else ()

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"Invalid LOG_LEVEL {log_level!r}. Choose from: {', '.join(_LOG_LEVELS)}")

    return Settings(
        data_urls=_parse_data_urls(os.getenv("DATA_URL", "")),
        areas=_parse_areas(os.getenv("AREAS", "")),
        site_filter=site_filter,
        check_interval_seconds=check_interval_seconds,
        fetch_retry_attempts=fetch_retry_attempts,
        max_concurrent_deliveries=max_concurrent_deliveries,
        shorten_urls=_parse_bool(os.getenv("SHORTEN_URLS", "0")),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_ids=telegram_chat_ids,
        twilio=_load_twilio(),
        log_level=log_level,
    )
