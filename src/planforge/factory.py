"""Shared construction helpers for models, phases and the loop controller."""

from __future__ import annotations

from pathlib import Path

from planforge.config import EnvSettings, ForgeConfig, resolve_recipe_path
from planforge.errors import ConfigError
from planforge.guardrails import Guardrails
from planforge.loop_controller import LoopController
from planforge.models.base import BaseChatModel
from planforge.models.mock import MockChatModel, MockRole
from planforge.models.openai_compat import OpenAICompatChatModel
from planforge.output import FileOutputWriter
from planforge.phases.chat import ChatPlanner, ChatReviewer
from planforge.phases.recipes import Recipe, load_recipe
from planforge.registry import SessionRegistry

MOCK_PROVIDER = "mock"
OPENAI_PROVIDERS = {"openai", "openai_compat"}


def build_model(
    env: EnvSettings,
    role: MockRole,
    provider: str | None = None,
    model: str | None = None,
    use_mock: bool = False,
) -> BaseChatModel:
    if use_mock or provider == MOCK_PROVIDER or not env.openai_api_key:
        return MockChatModel(role=role)
    if provider is not None and provider not in OPENAI_PROVIDERS:
        raise ConfigError(f"Unknown provider {provider!r}; expected mock or openai.")
    return OpenAICompatChatModel(
        base_url=env.openai_base_url,
        api_key=env.openai_api_key,
        model=model or env.openai_model,
        timeout_seconds=env.openai_timeout_seconds,
    )


def _recipe(path: str, env: EnvSettings) -> Recipe:
    return load_recipe(resolve_recipe_path(path, env.recipe_dir))


def build_planner(config: ForgeConfig, env: EnvSettings, use_mock: bool = False) -> ChatPlanner:
    recipe = _recipe(config.planning.recipe, env)
    model = build_model(
        env,
        "planner",
        provider=config.planning.provider_override or recipe.provider,
        model=config.planning.model_override or recipe.model,
        use_mock=use_mock,
    )
    return ChatPlanner(model, recipe)


def build_reviewer(config: ForgeConfig, env: EnvSettings, use_mock: bool = False) -> ChatReviewer:
    recipe = _recipe(config.review.recipe, env)
    model = build_model(
        env,
        "reviewer",
        provider=config.review.provider_override or recipe.provider,
        model=config.review.model_override or recipe.model,
        use_mock=use_mock,
    )
    return ChatReviewer(model, recipe)


def session_dir_for(config: ForgeConfig, slug: str) -> Path:
    return Path(config.output.runs_dir) / slug


def build_controller(
    config: ForgeConfig,
    env: EnvSettings,
    slug: str,
    use_mock: bool = False,
    registry: SessionRegistry | None = None,
) -> LoopController:
    session_dir = session_dir_for(config, slug)
    output = FileOutputWriter(session_dir, Path(config.output.active_dir), slug)
    return LoopController(
        planner=build_planner(config, env, use_mock=use_mock),
        reviewer=build_reviewer(config, env, use_mock=use_mock),
        output=output,
        config=config,
        session_dir=session_dir,
        slug=slug,
        guardrails=Guardrails(config.guardrails.to_limits()),
        registry=registry,
    )
