"""Recipe files: the instructions and model hints for a planner or reviewer."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from planforge.config import _ensure_dict, _get_optional_str, _get_str, _import_yaml, _require_keys
from planforge.errors import ConfigError


@dataclass(frozen=True)
class Recipe:
    path: Path
    instructions: str
    prompt: str | None = None
    provider: str | None = None
    model: str | None = None


def load_recipe(path: Path) -> Recipe:
    if not path.exists():
        raise ConfigError(f"recipe not found at {path}.")
    yaml = _import_yaml()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"recipe at {path} is not valid YAML: {exc}") from exc
    if data is None:
        raise ConfigError(f"recipe at {path} is empty.")
    payload = _ensure_dict(data, f"recipe {path.name}")
    _require_keys(payload, {"instructions", "prompt", "provider", "model"}, f"recipe {path.name}")
    if "instructions" not in payload:
        raise ConfigError(f"recipe {path.name} missing required instructions.")
    instructions = _get_str(payload["instructions"], f"recipe {path.name}.instructions")
    if not instructions.strip():
        raise ConfigError(f"recipe {path.name}.instructions must not be empty.")
    return Recipe(
        path=path,
        instructions=instructions,
        prompt=_get_optional_str(payload.get("prompt"), f"recipe {path.name}.prompt"),
        provider=_get_optional_str(payload.get("provider"), f"recipe {path.name}.provider"),
        model=_get_optional_str(payload.get("model"), f"recipe {path.name}.model"),
    )
