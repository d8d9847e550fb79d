# storia/config_loader.py
import os
from pathlib import Path
from typing import Optional

import yaml

from storia.analysis.models import ModelConfig
from storia.settings import (
    AudioSettings,
    PipelineSettings,
    RetrySettings,
    Settings,
    StorageSettings,
)

_DEFAULT_CONFIG_PATH = Path.home() / ".storia" / "config.yaml"


def load_settings(config_path: Optional[str] = None, required: bool = False) -> Settings:
    """
    Carga la configuración desde YAML.
    Resuelve variables de entorno (${VAR}) en cualquier valor string.
    Sin archivo devuelve los defaults, salvo required=True.
    """
    path = Path(config_path or os.environ.get("STORIA_CONFIG_PATH") or _DEFAULT_CONFIG_PATH)

    if not path.exists():
        if required:
            raise FileNotFoundError(
                f"Config no encontrada en {path}. "
                f"Copia config.example.yaml a ~/.storia/config.yaml"
            )
        return Settings()

    with path.open(encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    settings = Settings(
        models   = load_model_configs_from(raw),
        audio    = _section(AudioSettings, raw.get("audio")),
        storage  = _section(StorageSettings, raw.get("storage")),
        retry    = _section(RetrySettings, raw.get("retry")),
        pipeline = _section(PipelineSettings, raw.get("pipeline")),
    )

    for name, limit in (raw.get("queues") or {}).items():
        settings.queues[str(name)] = int(limit)

    return settings


def load_model_configs_from(raw: dict) -> list[ModelConfig]:
    """Lista de analizadores ordenada por prioridad ascendente."""
    configs = []
    for entry in raw.get("models", []) or []:
        configs.append(ModelConfig(
            name              = entry["name"],
            priority          = entry.get("priority", 99),
            daily_token_limit = entry.get("daily_token_limit", 80_000),
            api_key           = _resolve_env(entry.get("api_key")),
            timeout_seconds   = entry.get("timeout_seconds", 60),
            temperature       = entry.get("temperature", 0.2),
        ))
    return sorted(configs, key=lambda c: c.priority)


def _section(cls, values: Optional[dict]):
    """Construye un dataclass de settings ignorando claves desconocidas."""
    if not values:
        return cls()
    known = cls.__dataclass_fields__.keys()
    kwargs = {
        key: _resolve_env(value) if isinstance(value, str) else value
        for key, value in values.items()
        if key in known
    }
    return cls(**kwargs)


def _resolve_env(value: Optional[str]) -> Optional[str]:
    """Expande ${VAR_NAME} desde el entorno."""
    if not value or not value.startswith("${"):
        return value
    var_name = value.strip("${}").strip()
    return os.environ.get(var_name)
