"""Plan tiers, model catalog, capability bundles and daily limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Literal, Mapping

__all__ = [
    "Plan",
    "PLANS",
    "PLAN_ORDER",
    "UiModel",
    "UI_MODELS",
    "MODEL_MAP",
    "DEFAULT_MODEL_FOR_PLAN",
    "DAILY_LIMITS",
    "Capabilities",
    "ImageConfig",
    "normalize_plan",
    "is_allowed_plan",
    "is_model_allowed",
    "model_required_plan",
    "resolve_model",
    "resolve_ui_model",
    "capabilities_for_plan",
    "image_config_for_plan",
    "daily_limit",
]

LOGGER = logging.getLogger(__name__)

Plan = Literal["free", "pro", "max"]
PLANS: tuple[Plan, ...] = ("free", "pro", "max")
PLAN_ORDER: Mapping[str, int] = {"free": 0, "pro": 1, "max": 2}


@dataclass(slots=True, frozen=True)
class UiModel:
    """Model entry shown in the selector, gated by ``required`` plan."""

    id: str
    label: str
    required: Plan
    vision: bool = False
    reasoning: bool = False


UI_MODELS: tuple[UiModel, ...] = (
    UiModel("free-core", "gpt-4o-mini", "free", vision=True),
    UiModel("pro-core", "gpt-4o", "pro", vision=True),
    UiModel("pro-reason", "o3-mini", "pro", reasoning=True),
    UiModel("max-core", "gpt-5-core", "max", vision=True),
    UiModel("max-thinking", "gpt-5-thinking", "max", reasoning=True),
)
_MODEL_PLAN: Mapping[str, Plan] = {model.id: model.required for model in UI_MODELS}

# Provider model identifiers sent as ``resolvedModel``.
MODEL_MAP: Mapping[str, str] = {
    "free-core": "gpt-4o-mini",
    "pro-core": "gpt-4o",
    "pro-reason": "o3-mini",
    "max-core": "gpt-5-core",
    "max-thinking": "gpt-5-thinking",
}

DEFAULT_MODEL_FOR_PLAN: Mapping[str, str] = {"free": "free-core", "pro": "pro-core", "max": "max-core"}

DAILY_LIMITS: Mapping[str, Mapping[str, int]] = {
    "free": {"chat": 60, "image": 6, "voice": 1, "speech": 6},
    "pro": {"chat": 9999, "image": 9999, "voice": 9999, "speech": 9999},
    "max": {"chat": 99999, "image": 99999, "voice": 99999, "speech": 99999},
}


def normalize_plan(value: str | None) -> Plan:
    """Coerce arbitrary input into a known plan, defaulting to ``free``."""

    candidate = (value or "").strip().lower()
    if candidate in PLAN_ORDER:
        return candidate  # type: ignore[return-value]
    if candidate:
        LOGGER.debug("Unknown plan %r; treating as free", value)
    return "free"


def is_allowed_plan(user: str, required: str) -> bool:
    return PLAN_ORDER[normalize_plan(user)] >= PLAN_ORDER[normalize_plan(required)]


def model_required_plan(model_id: str) -> Plan | None:
    return _MODEL_PLAN.get(model_id)


def is_model_allowed(model_id: str, plan: str) -> bool:
    required = _MODEL_PLAN.get(model_id)
    return required is not None and is_allowed_plan(plan, required)


def resolve_model(model_id: str | None, plan: str) -> str:
    """Return the provider model for ``model_id``, falling back to the free model."""

    if not model_id or not is_model_allowed(model_id, plan):
        return MODEL_MAP["free-core"]
    return MODEL_MAP.get(model_id, MODEL_MAP["free-core"])


def resolve_ui_model(model_id: str | None, plan: str) -> str:
    """Return ``model_id`` when the plan may use it, else the plan default."""

    if model_id and is_model_allowed(model_id, plan):
        return model_id
    return DEFAULT_MODEL_FOR_PLAN[normalize_plan(plan)]


@dataclass(slots=True, frozen=True)
class Capabilities:
    """Feature switches trimmed per plan and passed to the completion endpoint."""

    followup_pills: bool
    web_search: bool
    market_data: bool
    weather: bool
    thinking_mode: bool
    file_tools: bool
    max_output_tokens: int
    max_context_window: int

    def allows_tool(self, kind: str) -> bool:
        """Return True when the tool marker ``kind`` may be executed."""

        if kind == "web_search":
            return self.web_search
        if kind == "stocks":
            return self.market_data
        if kind == "weather":
            return self.weather
        return False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "followupPills": self.followup_pills,
            "webSearch": self.web_search,
            "marketData": self.market_data,
            "weather": self.weather,
            "thinkingMode": self.thinking_mode,
            "fileTools": self.file_tools,
            "maxOutputTokens": self.max_output_tokens,
            "maxContextWin": self.max_context_window,
        }


def capabilities_for_plan(plan: str) -> Capabilities:
    tier = normalize_plan(plan)
    paid = tier != "free"
    return Capabilities(
        followup_pills=paid,
        web_search=paid,
        market_data=paid,
        weather=True,
        thinking_mode=tier == "max",
        file_tools=paid,
        max_output_tokens={"free": 900, "pro": 1800, "max": 3000}[tier],
        max_context_window={"free": 80_000, "pro": 120_000, "max": 160_000}[tier],
    )


@dataclass(slots=True, frozen=True)
class ImageConfig:
    """Image endpoint parameters for a plan."""

    model: str
    size: str
    quality: str | None = None
    style: str | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "size": self.size}
        if self.quality:
            payload["quality"] = self.quality
        if self.style:
            payload["style"] = self.style
        return payload


def image_config_for_plan(plan: str) -> ImageConfig:
    # Free renders smaller and more graphic; paid plans get larger natural HD output.
    if normalize_plan(plan) == "free":
        return ImageConfig(model="gpt-image-1", size="1024x1024", quality="standard", style="vivid")
    return ImageConfig(model="dall-e-3", size="1792x1024", quality="hd", style="natural")


def daily_limit(plan: str, kind: str) -> int:
    return DAILY_LIMITS[normalize_plan(plan)].get(kind, 0)
