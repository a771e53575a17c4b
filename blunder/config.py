"""
blunder Configuration Management
================================
Handles config loading, environment overrides, and platform-specific paths.
"""

from __future__ import annotations

import copy
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml
from platformdirs import user_config_dir

APP_NAME = "blunder"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
CONFIG_FILE = CONFIG_DIR / "config.yaml"


def ensure_dirs() -> None:
    """Create all required directories."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": "127.0.0.1",
        "port": 3000,
        "open_browser": True,
    },
    "proxy": {
        "timeout": 30.0,
        "max_redirects": 10,
        "verify_tls": True,
        "prefer_ipv4": True,
    },
    "ui": {
        "verbose": False,
    },
}

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    open_browser: bool = True


@dataclass
class ProxyConfig:
    timeout: float = 30.0           # 0 disables the upstream timeout
    max_redirects: int = 10
    verify_tls: bool = True
    prefer_ipv4: bool = True


@dataclass
class UIConfig:
    verbose: bool = False


@dataclass
class BlunderConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def load_config() -> BlunderConfig:
    """Load configuration from disk, env vars, and defaults."""
    raw: Dict[str, Any] = {}

    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            raw = yaml.safe_load(f) or {}

    # Merge with defaults
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), raw)

    # Env-var overrides
    if os.environ.get("BLUNDER_HOST"):
        merged["server"]["host"] = os.environ["BLUNDER_HOST"]
    if os.environ.get("BLUNDER_PORT"):
        merged["server"]["port"] = int(os.environ["BLUNDER_PORT"])
    if os.environ.get("BLUNDER_TIMEOUT"):
        merged["proxy"]["timeout"] = float(os.environ["BLUNDER_TIMEOUT"])
    if os.environ.get("BLUNDER_MAX_REDIRECTS"):
        merged["proxy"]["max_redirects"] = int(os.environ["BLUNDER_MAX_REDIRECTS"])
    if os.environ.get("BLUNDER_VERIFY_TLS"):
        merged["proxy"]["verify_tls"] = os.environ["BLUNDER_VERIFY_TLS"].lower() in _TRUE_VALUES

    cfg = BlunderConfig(
        server=ServerConfig(**merged.get("server", {})),
        proxy=ProxyConfig(**merged.get("proxy", {})),
        ui=UIConfig(**merged.get("ui", {})),
    )
    return cfg


def save_config(cfg: BlunderConfig) -> Path:
    """Persist current configuration to disk and return the file path."""
    ensure_dirs()
    data = {
        "server": {
            "host": cfg.server.host,
            "port": cfg.server.port,
            "open_browser": cfg.server.open_browser,
        },
        "proxy": {
            "timeout": cfg.proxy.timeout,
            "max_redirects": cfg.proxy.max_redirects,
            "verify_tls": cfg.proxy.verify_tls,
            "prefer_ipv4": cfg.proxy.prefer_ipv4,
        },
        "ui": {
            "verbose": cfg.ui.verbose,
        },
    }
    with open(CONFIG_FILE, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return CONFIG_FILE


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def detect_platform() -> Dict[str, str]:
    """Return platform information."""
    return {
        "system": platform.system(),
        "release": platform.release(),
        "machine": platform.machine(),
        "python": platform.python_version(),
    }
