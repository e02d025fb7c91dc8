import json
import os
import secrets
from pathlib import Path
from typing import Optional

from .browser_automation import debug_print
from .constants import DEFAULT_FAILOVER_ENABLED, DEFAULT_FAILOVER_MAX_RETRIES

CONFIG_FILE = os.environ.get("WEBAI_BRIDGE_CONFIG", "config.json")

DEFAULT_SITES = {
    "lmarena": {"url": "https://lmarena.ai/?mode=direct&chat-modality=image"},
}


def generate_api_key() -> str:
    return "sk-" + secrets.token_hex(24)

def _ensure_section(config: dict, key: str) -> dict:
    section = config.get(key)
    if not isinstance(section, dict):
        section = {}
        config[key] = section
    return section

def apply_defaults(config: dict) -> bool:
    """Fill in missing keys in place; returns True when something had to be generated."""
    generated = False
    config.setdefault("debug", True)
    config.setdefault("data_dir", "data")

    server = _ensure_section(config, "server")
    server.setdefault("host", "0.0.0.0")
    server.setdefault("port", 3000)
    server.setdefault("keepalive_seconds", 1.0)
    if not str(server.get("auth") or "").strip():
        server["auth"] = generate_api_key()
        generated = True

    browser = _ensure_section(config, "browser")
    browser.setdefault("headless", False)
    browser.setdefault("launch_timeout_seconds", 90)
    proxy = browser.get("proxy")
    if not isinstance(proxy, dict):
        proxy = {}
        browser["proxy"] = proxy
    proxy.setdefault("enable", False)
    proxy.setdefault("type", "http")
    proxy.setdefault("host", "127.0.0.1")
    proxy.setdefault("port", 7890)

    pool = _ensure_section(config, "pool")
    failover = pool.get("failover")
    if not isinstance(failover, dict):
        failover = {}
        pool["failover"] = failover
    failover.setdefault("enabled", DEFAULT_FAILOVER_ENABLED)
    failover.setdefault("max_retries", DEFAULT_FAILOVER_MAX_RETRIES)
    workers = pool.get("workers")
    if not isinstance(workers, list) or not workers:
        pool["workers"] = [{"name": "default", "type": "lmarena", "instance": "default"}]

    sites = _ensure_section(config, "sites")
    for site, defaults in DEFAULT_SITES.items():
        entry = sites.get(site)
        if not isinstance(entry, dict):
            sites[site] = dict(defaults)
        else:
            for key, value in defaults.items():
                entry.setdefault(key, value)
    return generated

def get_config(path: Optional[str] = None) -> dict:
    config_path = path or CONFIG_FILE
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            raise ValueError("config root must be an object")
    except FileNotFoundError:
        debug_print(f"⚠️  Config file {config_path} not found, using defaults")
        config = {}
    except (json.JSONDecodeError, ValueError) as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}

    if apply_defaults(config):
        debug_print("🔑 Generated a new API key (server.auth); saving config")
        save_config(config, config_path)
    return config

def save_config(config: dict, path: Optional[str] = None) -> None:
    config_path = path or CONFIG_FILE
    try:
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=4)
    except Exception as e:
        debug_print(f"❌ Error saving config: {e}")

def get_proxy_config(config: dict) -> Optional[dict]:
    proxy = ((config or {}).get("browser") or {}).get("proxy")
    if isinstance(proxy, dict) and proxy.get("enable"):
        return proxy
    return None

def get_failover_config(config: dict) -> dict:
    raw = ((config or {}).get("pool") or {}).get("failover")
    raw = raw if isinstance(raw, dict) else {}
    enabled = raw.get("enabled", DEFAULT_FAILOVER_ENABLED) is not False
    try:
        max_retries = max(0, int(raw.get("max_retries", DEFAULT_FAILOVER_MAX_RETRIES)))
    except (TypeError, ValueError):
        max_retries = DEFAULT_FAILOVER_MAX_RETRIES
    return {"enabled": enabled, "max_retries": max_retries}

def get_site_config(config: dict, site: str) -> dict:
    entry = ((config or {}).get("sites") or {}).get(str(site))
    return entry if isinstance(entry, dict) else {}

def get_data_dir(config: dict) -> Path:
    return Path(str((config or {}).get("data_dir") or "data"))
