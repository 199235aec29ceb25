"""Configuration loading: YAML file, environment overrides and defaults."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from planforge.errors import ConfigError
from planforge.guardrails import GuardrailLimits


def _import_yaml():
    try:
        import yaml  # type: ignore
    except ImportError as exc:  # pragma: no cover - exercised in integration
        raise ConfigError("Install plan-forge[yaml] to use YAML config files.") from exc
    return yaml


def _ensure_dict(value: Any, context: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{context} must be a mapping.")
    return value


def _require_keys(data: dict[str, Any], allowed: set[str], context: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        names = ", ".join(sorted(unknown))
        raise ConfigError(f"{context} has unknown fields: {names}.")


def _get_bool(value: Any, context: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{context} must be a boolean.")


def _get_str(value: Any, context: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"{context} must be a string.")


def _get_optional_str(value: Any, context: str) -> str | None:
    if value is None:
        return None
    return _get_str(value, context)


def _get_float(value: Any, context: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ConfigError(f"{context} must be a number.")


def _get_int(value: Any, context: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return int(value)
    raise ConfigError(f"{context} must be an integer.")


def clamp_threshold(value: float) -> float:
    return min(1.0, max(0.0, value))


class PlanningConfig(BaseModel):
    recipe: str = "recipes/planner.yaml"
    provider_override: str | None = None
    model_override: str | None = None


class ReviewConfig(BaseModel):
    recipe: str = "recipes/reviewer.yaml"
    provider_override: str | None = None
    model_override: str | None = None


class OutputConfig(BaseModel):
    runs_dir: str = "./.plan-forge"
    active_dir: str = "./dev/active"
    slug: str | None = None


class GuardrailsConfig(BaseModel):
    max_iterations: int = 10
    max_total_tokens: int = 500_000
    max_tool_calls: int = 100
    execution_timeout_secs: int = 600
    score_threshold: float = 0.8
    max_phase_errors: int = 3
    require_condition_approval: bool = False

    def to_limits(self) -> GuardrailLimits:
        return GuardrailLimits(
            max_iterations=self.max_iterations,
            max_total_tokens=self.max_total_tokens,
            max_tool_calls=self.max_tool_calls,
            execution_timeout_secs=self.execution_timeout_secs,
            max_phase_errors=self.max_phase_errors,
        )


class ForgeConfig(BaseModel):
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    guardrails: GuardrailsConfig = Field(default_factory=GuardrailsConfig)

    def with_threshold(self, threshold: float) -> "ForgeConfig":
        value = clamp_threshold(threshold)
        return self.model_copy(
            update={"guardrails": self.guardrails.model_copy(update={"score_threshold": value})}
        )


class EnvSettings(BaseSettings):
    """Environment overrides, read once per process entry point."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, populate_by_name=True
    )

    threshold: float | None = Field(default=None, validation_alias="PLAN_FORGE_THRESHOLD")
    max_iterations: int | None = Field(
        default=None, validation_alias="PLAN_FORGE_MAX_ITERATIONS"
    )
    max_total_tokens: int | None = Field(
        default=None, validation_alias="PLAN_FORGE_MAX_TOTAL_TOKENS"
    )
    planner_provider: str | None = Field(
        default=None, validation_alias="PLAN_FORGE_PLANNER_PROVIDER"
    )
    planner_model: str | None = Field(default=None, validation_alias="PLAN_FORGE_PLANNER_MODEL")
    reviewer_provider: str | None = Field(
        default=None, validation_alias="PLAN_FORGE_REVIEWER_PROVIDER"
    )
    reviewer_model: str | None = Field(
        default=None, validation_alias="PLAN_FORGE_REVIEWER_MODEL"
    )
    recipe_dir: str | None = Field(default=None, validation_alias="PLAN_FORGE_RECIPE_DIR")
    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL"
    )
    openai_model: str = Field(default="gpt-4.1-mini", validation_alias="OPENAI_MODEL")
    openai_timeout_seconds: int = Field(
        default=30, validation_alias="OPENAI_TIMEOUT_SECONDS"
    )


def apply_env(config: ForgeConfig, env: EnvSettings) -> ForgeConfig:
    """Layer environment values over a file or default config."""
    data = config.model_dump()
    if env.max_iterations is not None:
        data["guardrails"]["max_iterations"] = env.max_iterations
    if env.max_total_tokens is not None:
        data["guardrails"]["max_total_tokens"] = env.max_total_tokens
    if env.planner_provider:
        data["planning"]["provider_override"] = env.planner_provider
    if env.planner_model:
        data["planning"]["model_override"] = env.planner_model
    if env.reviewer_provider:
        data["review"]["provider_override"] = env.reviewer_provider
    if env.reviewer_model:
        data["review"]["model_override"] = env.reviewer_model
    updated = ForgeConfig(**data)
    if env.threshold is not None:
        updated = updated.with_threshold(env.threshold)
    return updated


PACKAGE_DIR = Path(__file__).resolve().parent


def resolve_recipe_path(recipe: str, recipe_dir: str | None = None) -> Path:
    """Relative recipes resolve against ``recipe_dir``, the working directory, then the package."""
    path = Path(recipe)
    if path.is_absolute():
        return path
    if recipe_dir:
        return Path(recipe_dir) / path
    if path.exists():
        return path
    return PACKAGE_DIR / path


def _parse_phase_group(data: Any, context: str, with_threshold: bool) -> dict[str, Any]:
    payload = _ensure_dict(data, context)
    allowed = {"recipe", "provider_override", "model_override"}
    if with_threshold:
        allowed.add("pass_threshold")
    _require_keys(payload, allowed, context)
    parsed: dict[str, Any] = {}
    if "recipe" in payload:
        parsed["recipe"] = _get_str(payload["recipe"], f"{context}.recipe")
    for key in ("provider_override", "model_override"):
        if key in payload:
            parsed[key] = _get_optional_str(payload[key], f"{context}.{key}")
    if "pass_threshold" in payload:
        threshold = _get_float(payload["pass_threshold"], f"{context}.pass_threshold")
        if not 0.0 <= threshold <= 1.0:
            raise ConfigError(f"{context}.pass_threshold must be between 0 and 1.")
        parsed["pass_threshold"] = threshold
    return parsed


def _parse_output(data: Any) -> OutputConfig:
    payload = _ensure_dict(data, "output")
    _require_keys(payload, {"runs_dir", "active_dir", "slug"}, "output")
    parsed: dict[str, Any] = {}
    for key in ("runs_dir", "active_dir"):
        if key in payload:
            parsed[key] = _get_str(payload[key], f"output.{key}")
    if "slug" in payload:
        parsed["slug"] = _get_optional_str(payload["slug"], "output.slug")
    return OutputConfig(**parsed)


def _parse_guardrails(data: Any) -> GuardrailsConfig:
    payload = _ensure_dict(data, "guardrails")
    int_keys = {
        "max_iterations",
        "max_total_tokens",
        "max_tool_calls",
        "execution_timeout_secs",
        "max_phase_errors",
    }
    _require_keys(
        payload, int_keys | {"score_threshold", "require_condition_approval"}, "guardrails"
    )
    parsed: dict[str, Any] = {}
    for key in int_keys:
        if key in payload:
            parsed[key] = _get_int(payload[key], f"guardrails.{key}")
    for key in ("max_iterations", "max_phase_errors"):
        if key in parsed and parsed[key] < 1:
            raise ConfigError(f"guardrails.{key} must be at least 1.")
    if "score_threshold" in payload:
        threshold = _get_float(payload["score_threshold"], "guardrails.score_threshold")
        if not 0.0 <= threshold <= 1.0:
            raise ConfigError("guardrails.score_threshold must be between 0 and 1.")
        parsed["score_threshold"] = threshold
    if "require_condition_approval" in payload:
        parsed["require_condition_approval"] = _get_bool(
            payload["require_condition_approval"], "guardrails.require_condition_approval"
        )
    return GuardrailsConfig(**parsed)


def load_config(path: Path) -> ForgeConfig:
    """Load a strict YAML config.

    ``review.pass_threshold`` is accepted as another spelling of
    ``guardrails.score_threshold``; giving both with different values is an error.
    """
    if not path.exists():
        raise ConfigError(f"config not found at {path}.")
    yaml = _import_yaml()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"config at {path} is not valid YAML: {exc}") from exc
    if data is None:
        return ForgeConfig()
    payload = _ensure_dict(data, "config")
    _require_keys(payload, {"planning", "review", "output", "guardrails"}, "config")
    config = ForgeConfig()
    review_threshold: float | None = None
    if payload.get("planning") is not None:
        config.planning = PlanningConfig(
            **_parse_phase_group(payload["planning"], "planning", with_threshold=False)
        )
    if payload.get("review") is not None:
        review = _parse_phase_group(payload["review"], "review", with_threshold=True)
        review_threshold = review.pop("pass_threshold", None)
        config.review = ReviewConfig(**review)
    if payload.get("output") is not None:
        config.output = _parse_output(payload["output"])
    guardrails = payload.get("guardrails")
    if guardrails is not None:
        config.guardrails = _parse_guardrails(guardrails)
    if review_threshold is not None:
        if "score_threshold" in (guardrails or {}) and (
            config.guardrails.score_threshold != review_threshold
        ):
            raise ConfigError(
                "review.pass_threshold and guardrails.score_threshold disagree;"
                " set only guardrails.score_threshold."
            )
        config = config.with_threshold(review_threshold)
    return config


def resolve_config(path: Path | None = None, env: EnvSettings | None = None) -> ForgeConfig:
    """Defaults, then the optional file, then the environment."""
    config = load_config(path) if path is not None else ForgeConfig()
    return apply_env(config, env or EnvSettings())
