"""Configuration loading and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml


@dataclass
class AppConfig:
    title: str = "Dev Helper Agent"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 1
    sampling_interval_ms: int = 50
    offline_mode: bool = True
    gpu_index: int | None = 0
    log_level: str = "info"
    default_model: str | None = None


@dataclass
class GenerationDefaults:
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    max_context: int = 4096


@dataclass
class ModelSpec:
    key: str
    display_name: str
    local_path: str
    family_hint: str | None = None
    compression: str | None = None
    layer_cache_dir: str = "./cache/airllm_layers"


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    generation: GenerationDefaults = field(default_factory=GenerationDefaults)
    models: list[ModelSpec] = field(default_factory=list)


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def parse_config(raw: dict[str, Any]) -> RootConfig:
    app_raw = _get(raw, "app", {})
    gen_raw = _get(raw, "generation", {})
    models_raw = _get(raw, "models", [])

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        sampling_interval_ms=int(_get(app_raw, "sampling_interval_ms", AppConfig.sampling_interval_ms)),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        gpu_index=_optional_int(_get(app_raw, "gpu_index", AppConfig.gpu_index)),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)),
        default_model=_get(app_raw, "default_model", AppConfig.default_model),
    )

    gen = GenerationDefaults(
        temperature=float(_get(gen_raw, "temperature", GenerationDefaults.temperature)),
        max_tokens=int(_get(gen_raw, "max_tokens", GenerationDefaults.max_tokens)),
        top_p=float(_get(gen_raw, "top_p", GenerationDefaults.top_p)),
        max_context=int(_get(gen_raw, "max_context", GenerationDefaults.max_context)),
    )

    models: list[ModelSpec] = []
    if isinstance(models_raw, list):
        for item in models_raw:
            models.append(
                ModelSpec(
                    key=_get(item, "key", ""),
                    display_name=_get(item, "display_name", "") or _get(item, "key", ""),
                    local_path=_get(item, "local_path", ""),
                    family_hint=_get(item, "family_hint", None),
                    compression=_get(item, "compression", None),
                    layer_cache_dir=_get(item, "layer_cache_dir", "./cache/airllm_layers"),
                )
            )

    return RootConfig(app=app, generation=gen, models=models)


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)
