# hostforge/core/config_store.py
import os
import json
import secrets
from typing import Optional
from pydantic import BaseModel, Field

CONFIG_DIR = os.environ.get("HOSTFORGE_CONFIG_DIR", "configs")
CONFIG_FILE = "app.json"

_ENV_PREFIX = "HOSTFORGE_"


class AppConfig(BaseModel):
    data_dir: str = "state"
    app_name: str = "hostforge"
    # Base URL the freshly booted host uses to reach us.
    callback_base_url: str = "http://127.0.0.1:8000"
    signing_key: str = Field(default_factory=lambda: secrets.token_hex(32))
    provision_link_ttl_seconds: int = 86400
    worker_count: int = 4
    ssh_timeout_seconds: int = 300
    app_user: str = "hostforge"
    deployments_root: str = "/home/hostforge/deployments"
    releases_kept: int = 14
    # Runtime the bootstrap installs as the first PHP (CLI and Site default).
    default_php_version: str = "8.3"
    public_key: Optional[str] = None


def _config_path() -> str:
    return os.path.join(CONFIG_DIR, CONFIG_FILE)


def _env_overrides() -> dict:
    res = {}
    for name, field in AppConfig.model_fields.items():
        v = os.environ.get(_ENV_PREFIX + name.upper())
        if v is None:
            continue
        if field.annotation is int:
            v = int(v)
        res[name] = v
    return res


def load_app_config() -> AppConfig:
    data = {}
    p = _config_path()
    if os.path.exists(p):
        with open(p, "r", encoding="utf-8") as f:
            data = json.load(f)
    data.update(_env_overrides())
    cfg = AppConfig(**data)
    if not os.path.exists(p):
        # Persist the generated signing key so signed links survive restarts.
        save_app_config(cfg)
    return cfg


def save_app_config(cfg: AppConfig):
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(_config_path(), "w", encoding="utf-8") as f:
        f.write(cfg.model_dump_json(indent=2))
