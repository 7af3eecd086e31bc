from __future__ import annotations

import json
import logging
import math
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

_LOGGER = logging.getLogger("tablink.config")

CONFIG_BASENAMES: tuple[str, ...] = ("tablink.json", "tablink.config.json")
DEFAULT_DEVTOOLS_URL = "http://127.0.0.1:9222"
DEFAULT_DAEMON_URL = "ws://127.0.0.1:4455/bridge"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def state_dir() -> Path:
    return Path(expand_path(os.environ.get("TABLINK_STATE_DIR", "~/.tablink")))


@dataclass(frozen=True, slots=True)
class CookieOriginMapping:
    """Extra origins to read cookies from when the target host matches."""

    hosts: tuple[str, ...]
    origins: tuple[str, ...]

    def matches_host(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not host:
            return False
        for raw_allowed in self.hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed or host.endswith("." + allowed):
                return True
        return False


@dataclass
class BridgeConfig:
    devtools_url: str = DEFAULT_DEVTOOLS_URL
    app_url: str | None = None
    daemon_url: str = DEFAULT_DAEMON_URL
    chrome_profile: str | None = None
    debug: bool = False
    cookie_debug: bool = False
    http_timeout: float = 5.0
    command_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> BridgeConfig:
        profile = (os.environ.get("TABLINK_CHROME_PROFILE") or "").strip()
        return cls(
            devtools_url=(os.environ.get("TABLINK_DEVTOOLS_URL") or DEFAULT_DEVTOOLS_URL).strip().rstrip("/"),
            app_url=(os.environ.get("TABLINK_APP_URL") or "").strip() or None,
            daemon_url=(os.environ.get("TABLINK_DAEMON_URL") or DEFAULT_DAEMON_URL).strip(),
            chrome_profile=expand_path(profile) if profile else None,
            debug=_env_flag("TABLINK_DEBUG"),
            cookie_debug=_env_flag("TABLINK_COOKIE_DEBUG"),
            http_timeout=float(os.environ.get("TABLINK_HTTP_TIMEOUT", "5")),
            command_timeout=float(os.environ.get("TABLINK_COMMAND_TIMEOUT", "30")),
        )


@dataclass
class FileConfig:
    app_url: str | None = None
    prod_url: str | None = None
    daemon_url: str | None = None
    port: int | None = None
    cookie_mappings: list[CookieOriginMapping] = field(default_factory=list)


@dataclass(frozen=True)
class LoadedFileConfig:
    path: Path | None
    config: FileConfig


def _normalize_string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        trimmed = value.strip()
        return [trimmed] if trimmed else []
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return []


def normalize_cookie_mappings(value: Any) -> list[CookieOriginMapping]:
    """Accept `hosts`|`match` and `origins`|`include`, each a string or a list."""
    if not isinstance(value, list):
        return []
    mappings: list[CookieOriginMapping] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        hosts = _normalize_string_list(entry.get("hosts", entry.get("match")))
        origins = _normalize_string_list(entry.get("origins", entry.get("include")))
        if not hosts or not origins:
            continue
        mappings.append(CookieOriginMapping(hosts=tuple(h.lower() for h in hosts), origins=tuple(origins)))
    return mappings


def _normalize_file_config(raw: dict[str, Any]) -> FileConfig:
    config = FileConfig()
    for key, attr in (("appUrl", "app_url"), ("prodUrl", "prod_url"), ("daemonUrl", "daemon_url")):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            setattr(config, attr, value.strip())
    port = raw.get("port")
    if isinstance(port, (int, float)) and not isinstance(port, bool) and math.isfinite(port) and port > 0:
        config.port = int(port)
    config.cookie_mappings = normalize_cookie_mappings(raw.get("cookieMappings"))
    return config


def find_config_path(start: Path) -> Path | None:
    current = start.resolve()
    while True:
        for basename in CONFIG_BASENAMES:
            candidate = current / basename
            if candidate.exists():
                return candidate
        if current.parent == current:
            return None
        current = current.parent


_CACHED_FILE_CONFIG: LoadedFileConfig | None = None


def reset_file_config_cache() -> None:
    global _CACHED_FILE_CONFIG
    _CACHED_FILE_CONFIG = None


def load_file_config(start: Path | None = None) -> LoadedFileConfig:
    """Load the nearest tablink.json walking up from `start` (default: cwd).

    The result is cached for the process; a malformed file logs a warning and
    yields an empty config rather than failing the command.
    """
    global _CACHED_FILE_CONFIG
    if _CACHED_FILE_CONFIG is not None:
        return _CACHED_FILE_CONFIG

    path = find_config_path(start or Path.cwd())
    if path is None:
        _CACHED_FILE_CONFIG = LoadedFileConfig(path=None, config=FileConfig())
        return _CACHED_FILE_CONFIG

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("top-level value must be an object")
        config = _normalize_file_config(raw)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to read configuration from %s: %s", path, exc)
        config = FileConfig()
    _CACHED_FILE_CONFIG = LoadedFileConfig(path=path, config=config)
    return _CACHED_FILE_CONFIG


@dataclass
class DevToolsLink:
    """Where the controlled browser's DevTools endpoint was last seen."""

    devtools_url: str
    port: int
    user_data_dir: str
    updated_at: int = 0
    target_url: str | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        raw = asdict(self)
        return {
            "devtoolsUrl": raw["devtools_url"],
            "port": raw["port"],
            "userDataDir": raw["user_data_dir"],
            "updatedAt": raw["updated_at"],
            **({"targetUrl": raw["target_url"]} if raw["target_url"] else {}),
            **({"sessionId": raw["session_id"]} if raw["session_id"] else {}),
        }


def devtools_link_path() -> Path:
    return state_dir() / "devtools.json"


def load_devtools_link(path: Path | None = None) -> DevToolsLink | None:
    path = path or devtools_link_path()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        _LOGGER.debug("Failed to read DevTools link %s: %s", path, exc)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("devtoolsUrl"), str) or not data.get("devtoolsUrl"):
        return None
    try:
        port = int(data.get("port") or 0)
    except (TypeError, ValueError):
        port = 0
    return DevToolsLink(
        devtools_url=data["devtoolsUrl"],
        port=port,
        user_data_dir=str(data.get("userDataDir") or ""),
        updated_at=int(data.get("updatedAt") or 0),
        target_url=data.get("targetUrl") if isinstance(data.get("targetUrl"), str) else None,
        session_id=data.get("sessionId") if isinstance(data.get("sessionId"), str) else None,
    )


def save_devtools_link(
    devtools_url: str,
    *,
    port: int | None = None,
    user_data_dir: str | None = None,
    target_url: str | None = None,
    session_id: str | None = None,
    path: Path | None = None,
) -> DevToolsLink:
    """Merge the given fields over the stored link and write it back."""
    path = path or devtools_link_path()
    existing = load_devtools_link(path)
    resolved_port = port if port is not None else (existing.port if existing else None)
    if resolved_port is None:
        raise ValueError("DevTools port is required")
    resolved_dir = user_data_dir if user_data_dir is not None else (existing.user_data_dir if existing else None)
    if resolved_dir is None:
        raise ValueError("DevTools userDataDir is required")
    link = DevToolsLink(
        devtools_url=devtools_url,
        port=int(resolved_port),
        user_data_dir=resolved_dir,
        updated_at=int(time.time() * 1000),
        target_url=target_url if target_url is not None else (existing.target_url if existing else None),
        session_id=session_id if session_id is not None else (existing.session_id if existing else None),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(link.to_dict(), indent=2), encoding="utf-8")
    return link
