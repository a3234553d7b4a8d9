"""Environment driven configuration for the user administration service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_CONFIG_DIR = "/config"
DEFAULT_PORT = 3000
DEFAULT_INVITE_PATH = "/admin/invite/accept.html"
DEFAULT_ADMIN_GROUP = "admins"
DEFAULT_GROUP_HEADERS = (
    "x-forwarded-groups",
    "remote-groups",
    "x-authentik-groups",
    "x-authelia-groups",
    "x-forwarded-user",
    "x-remote-groups",
)
DEFAULT_HASH_TIMEOUT = 30.0


@dataclass(frozen=True)
class SMTPConfig:
    """Connection settings for the outbound mail relay."""

    host: str
    port: int
    secure: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = "Authelia <authelia@example.com>"
    timeout: float = 30.0


@dataclass(frozen=True)
class Argon2Config:
    time_cost: int = 3
    memory_cost: int = 65536
    parallelism: int = 4


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved once at startup."""

    config_dir: Path
    users_file: Path
    invites_file: Path
    log_file: Optional[Path]
    log_level: str = "info"
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    base_url: str = ""
    invite_path: str = DEFAULT_INVITE_PATH
    invite_subject: str = "Invitation to Authelia"
    admin_group: str = DEFAULT_ADMIN_GROUP
    group_headers: tuple[str, ...] = DEFAULT_GROUP_HEADERS
    trusted_proxies: tuple[str, ...] = ("*",)
    smtp: Optional[SMTPConfig] = None
    hash_provider: str = "authelia"
    authelia_bin: str = "authelia"
    hash_timeout: float = DEFAULT_HASH_TIMEOUT
    argon2: Argon2Config = Argon2Config()

    @staticmethod
    def for_directory(config_dir: Path, **overrides: object) -> "Settings":
        """Build settings that keep every file inside ``config_dir``."""

        values: dict[str, object] = {
            "config_dir": config_dir,
            "users_file": config_dir / "users.yml",
            "invites_file": config_dir / "useradmin-invites.json",
            "log_file": config_dir / "useradmin.log",
        }
        values.update(overrides)
        return Settings(**values)  # type: ignore[arg-type]


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _resolve_path(value: Optional[str], default: Path) -> Path:
    if value:
        return Path(value).expanduser().resolve(strict=False)
    return default


def _load_smtp(environ: Mapping[str, str]) -> Optional[SMTPConfig]:
    host = (environ.get("SMTP_HOST") or "").strip()
    port = (environ.get("SMTP_PORT") or "").strip()
    if not host or not port:
        return None

    username = environ.get("SMTP_USER") or None
    sender = environ.get("SMTP_FROM") or f"Authelia <{username or 'authelia@example.com'}>"
    return SMTPConfig(
        host=host,
        port=_env_int(environ, "SMTP_PORT", 25),
        secure=_env_flag(environ.get("SMTP_SECURE")),
        username=username,
        password=environ.get("SMTP_PASS") or None,
        sender=sender,
    )


_LOG_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}
_LOG_LEVEL_ALIASES = {"warn": "warning", "verbose": "debug", "silly": "debug"}


def _parse_log_level(raw: Optional[str]) -> str:
    level = (raw or "info").strip().lower() or "info"
    level = _LOG_LEVEL_ALIASES.get(level, level)
    if level not in _LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, got {raw!r}")
    return level


def _parse_headers(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_GROUP_HEADERS
    headers = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return headers or DEFAULT_GROUP_HEADERS


def _parse_proxies(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ("*",)
    hosts = tuple(item.strip() for item in raw.split(",") if item.strip())
    return hosts or ("*",)


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Resolve :class:`Settings` from environment variables."""

    env = os.environ if environ is None else environ

    config_dir = _resolve_path(env.get("CONFIG_DIR"), Path(DEFAULT_CONFIG_DIR))
    hash_provider = (env.get("HASH_PROVIDER") or "authelia").strip().lower()
    if hash_provider not in {"authelia", "passlib"}:
        raise ValueError(f"HASH_PROVIDER must be 'authelia' or 'passlib', got {hash_provider!r}")

    return Settings(
        config_dir=config_dir,
        users_file=_resolve_path(env.get("USERS_FILE"), config_dir / "users.yml"),
        invites_file=_resolve_path(env.get("INVITES_FILE"), config_dir / "useradmin-invites.json"),
        log_file=_resolve_path(env.get("LOG_FILE"), config_dir / "useradmin.log"),
        log_level=_parse_log_level(env.get("LOG_LEVEL")),
        host=(env.get("HOST") or "0.0.0.0").strip(),
        port=_env_int(env, "PORT", DEFAULT_PORT),
        base_url=(env.get("BASE_URL") or "").strip().rstrip("/"),
        invite_path=(env.get("INVITE_PATH") or DEFAULT_INVITE_PATH).strip(),
        invite_subject=(env.get("INVITE_SUBJECT") or "Invitation to Authelia").strip(),
        admin_group=(env.get("ADMIN_GROUP") or DEFAULT_ADMIN_GROUP).strip(),
        group_headers=_parse_headers(env.get("TRUSTED_GROUP_HEADERS")),
        trusted_proxies=_parse_proxies(env.get("TRUSTED_PROXIES")),
        smtp=_load_smtp(env),
        hash_provider=hash_provider,
        authelia_bin=(env.get("AUTHELIA_BIN") or "authelia").strip(),
        hash_timeout=_env_float(env, "HASH_TIMEOUT", DEFAULT_HASH_TIMEOUT),
        argon2=Argon2Config(
            time_cost=_env_int(env, "ARGON2_TIME_COST", 3),
            memory_cost=_env_int(env, "ARGON2_MEMORY_COST", 65536),
            parallelism=_env_int(env, "ARGON2_PARALLELISM", 4),
        ),
    )


__all__ = ["Argon2Config", "SMTPConfig", "Settings", "load_settings"]
