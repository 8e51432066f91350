from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, MutableMapping, Optional, Sequence, Type

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from ledger_scout.config.models import AppConfig, ConfigLoadRequest

EXAMPLE_CONFIG_PATH = Path("examples/config.yaml")


def _read_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        _ensure_default_config(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _ensure_default_config(target_path: Path) -> None:
    if not EXAMPLE_CONFIG_PATH.exists():
        return
    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(EXAMPLE_CONFIG_PATH, target_path)


def _load_dotenv_if_present(dotenv_path: Path) -> None:
    if not dotenv_path.exists():
        return
    load_dotenv(dotenv_path=dotenv_path, override=False)


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    remainder = env_var_name[len(prefix) :]
    parts = [p for p in remainder.split("__") if p]
    if not parts:
        raise ValueError(f"Invalid environment variable override name: {env_var_name}")
    return [p.lower() for p in parts]


def _nested_model(model: Type[BaseModel], field_name: str) -> Optional[Type[BaseModel]]:
    annotation = model.model_fields[field_name].annotation
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    return None


def _get_parent_mapping(config: MutableMapping[str, Any], path: Sequence[str]) -> MutableMapping[str, Any]:
    """Walk `path[:-1]`, creating sections that the schema knows but the YAML omits."""
    dotted = ".".join(path)
    cur: MutableMapping[str, Any] = config
    model: Optional[Type[BaseModel]] = AppConfig
    for segment in path[:-1]:
        if model is None or segment not in model.model_fields:
            raise KeyError(f"Unknown configuration key path: {dotted}")
        model = _nested_model(model, segment)
        if model is None:
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
        next_value = cur.setdefault(segment, {})
        if not isinstance(next_value, dict):
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
        cur = next_value
    if model is None or path[-1] not in model.model_fields:
        raise KeyError(f"Unknown configuration key path: {dotted}")
    return cur


def _coerce_env_value(value: str) -> Any:
    # Sequences are written as YAML flow lists with quoted items, e.g. '["https://a/{cid}", "https://b/{cid}"]'.
    if value.strip().startswith("["):
        return yaml.safe_load(value)
    return value


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> None:
    for name, value in os.environ.items():
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        parent = _get_parent_mapping(config, segments)

        # We allow overriding any value; Pydantic will handle type coercion/validation later.
        parent[segments[-1]] = _coerce_env_value(value)


class YamlConfigLoader:
    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        yaml_path = Path(request.yaml_path)
        config = _read_yaml_config(yaml_path)

        if request.dotenv_path is not None:
            _load_dotenv_if_present(Path(request.dotenv_path))

        _apply_env_overrides(config, request.env_prefix)
        return AppConfig.model_validate(config)
