from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from labpilot_ai_core.errors import ProviderError
from labpilot_ai_core.models import MediaPart, ModelTier
from labpilot_ai_core.orchestrator import ModelFallbackOrchestrator
from labpilot_ai_core.parser import parse_lenient
from labpilot_ai_core.time_utils import parse_iso, to_iso, utc_now

from .providers import ModelClient, ModelPayload, TierModels

logger = logging.getLogger(__name__)

COACH_FALLBACK_REPLY = "I'm processing..."
PATTERN_LOG_WINDOW = 10
_UNDATED = datetime.min.replace(tzinfo=timezone.utc)

MEAL_SIMULATION_DEFAULT: dict[str, Any] = {
    "risk_score": None,
    "prediction": "",
    "biological_mechanisms": [],
    "verdict": None,
}
MENU_ANALYSIS_DEFAULT: dict[str, Any] = {
    "safe_options": [],
    "caution_options": [],
    "avoid_options": [],
    "chef_card_text": "",
}
FLARE_REPORT_DEFAULT: dict[str, Any] = {"spike_detected": False, "suspects": [], "conclusion": ""}
MEAL_PLAN_DEFAULT: dict[str, Any] = {"breakfast": None, "lunch": None, "dinner": None, "snack": None}


def _condition_text(condition: str | None) -> str:
    cleaned = (condition or "").strip()
    return cleaned or "an inflammatory condition"


def _listing(values: list[str] | None) -> str:
    return ", ".join(value.strip() for value in values or [] if value and value.strip())


def _most_recent(logs: list[dict[str, Any]] | None, limit: int = PATTERN_LOG_WINDOW) -> list[dict[str, Any]]:
    """Newest entries first by their ``timestamp``; undated entries sort last."""
    entries = [log for log in logs or [] if isinstance(log, dict)]
    entries.sort(key=lambda log: parse_iso(str(log.get("timestamp") or "")) or _UNDATED, reverse=True)
    return entries[:limit]


class StructuredExtractor:
    """Single-shot image/text extraction routed through the fallback orchestrator."""

    def __init__(
        self,
        *,
        client: ModelClient,
        orchestrator: ModelFallbackOrchestrator,
        tier_models: TierModels,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.orchestrator = orchestrator
        self.tier_models = tier_models
        self._clock = clock

    def extract(
        self,
        prompt: str,
        *,
        media: list[MediaPart] | None = None,
        schema_hint: dict[str, Any] | None = None,
        preferred: ModelTier = ModelTier.PRIMARY,
        default: Any = None,
    ) -> Any:
        payload = ModelPayload(prompt=prompt, media=list(media or []))

        def _call(tier: ModelTier) -> str:
            return self.client.invoke(self.tier_models.model_for(tier), payload, schema_hint)

        parsed = parse_lenient(self.orchestrator.execute(_call, preferred))
        if parsed is None:
            return copy.deepcopy(default)
        return parsed

    def _extract_object(self, prompt: str, *, default: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        parsed = self.extract(prompt, default=default, **kwargs)
        if not isinstance(parsed, dict):
            return copy.deepcopy(default)
        merged = copy.deepcopy(default)
        merged.update(parsed)
        return merged

    def _extract_list(self, prompt: str, *, key: str, **kwargs: Any) -> list[dict[str, Any]]:
        """A JSON array of objects, also accepted when wrapped as ``{key: [...]}``."""
        parsed = self.extract(prompt, default=[], **kwargs)
        if isinstance(parsed, dict):
            parsed = parsed.get(key)
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, dict)]

    def _stamp(self, result: dict[str, Any], *, prefix: str, time_key: str) -> dict[str, Any]:
        result["id"] = f"{prefix}_{uuid.uuid4().hex}"
        result[time_key] = to_iso(self._clock())
        return result

    def analyze_food_image(
        self,
        image: bytes,
        mime_type: str = "image/jpeg",
        *,
        condition: str | None = None,
        goals: list[str] | None = None,
    ) -> dict[str, Any]:
        lines = [
            f"Identify every food item in the image for a user with {_condition_text(condition)}.",
            "For each item list its ingredients and rate each ingredient high, medium or safe for that condition.",
        ]
        if goals:
            lines.append(f"The user's health goals are: {', '.join(goals)}.")
        lines.append("Return JSON only with key detected_items.")
        return self._extract_object(
            "\n".join(lines),
            media=[MediaPart(mime_type=mime_type, data=image)],
            default={"detected_items": []},
        )

    def scan_grocery_product(self, image: bytes, mime_type: str = "image/jpeg", *, condition: str | None = None) -> dict[str, Any]:
        prompt = (
            f"Examine this grocery label for inflammatory triggers related to {_condition_text(condition)}. "
            "Return JSON only."
        )
        result = self._extract_object(prompt, media=[MediaPart(mime_type=mime_type, data=image)], default={})
        result["is_grocery_scan"] = True
        return result

    def simulate_meal_impact(self, image: bytes, mime_type: str = "image/jpeg", *, condition: str | None = None) -> dict[str, Any]:
        prompt = (
            f"Simulate how the meal in this photo is likely to affect a user with {_condition_text(condition)}. "
            "Return JSON only with keys risk_score (0-100), prediction, biological_mechanisms (list), "
            "verdict (Safe|Caution|Avoid) and optionally better_option."
        )
        return self._extract_object(
            prompt,
            media=[MediaPart(mime_type=mime_type, data=image)],
            default=MEAL_SIMULATION_DEFAULT,
        )

    def analyze_restaurant_menu(self, image: bytes, mime_type: str = "image/jpeg", *, condition: str | None = None) -> dict[str, Any]:
        prompt = (
            f"Sort the dishes on this restaurant menu for a user with {_condition_text(condition)}. "
            "Return JSON only with keys safe_options, caution_options, avoid_options "
            "(each a list of {name, reason, modification}) and chef_card_text, a short note for the waiter."
        )
        return self._extract_object(
            prompt,
            media=[MediaPart(mime_type=mime_type, data=image)],
            default=MENU_ANALYSIS_DEFAULT,
        )

    def parse_health_log_text(self, text: str, *, condition: str | None = None) -> dict[str, Any]:
        prompt = (
            f"Extract food logs and behavior logs from this note by a user with {_condition_text(condition)}: "
            f"{text.strip()}\nReturn JSON only with keys food_logs and behavior_logs."
        )
        return self._extract_object(
            prompt,
            preferred=ModelTier.SECONDARY,
            default={"food_logs": [], "behavior_logs": []},
        )

    def generate_pattern_insights(
        self,
        flare_logs: list[dict[str, Any]],
        *,
        condition: str | None = None,
        goals: list[str] | None = None,
    ) -> dict[str, Any] | None:
        """Trend analysis over the most recent flare logs, or None when the model gave nothing usable."""
        lines = [f"Analyze flare trends for a user with {_condition_text(condition)}."]
        if _listing(goals):
            lines.append(f"Goals: {_listing(goals)}.")
        lines.append(f"Recent flare logs: {json.dumps(_most_recent(flare_logs), default=str)}")
        lines.append("Return JSON only with keys afir_score {value, trend, influencing_factors} and forecast {risk_level, explanation}.")
        parsed = self.extract("\n".join(lines))
        if not isinstance(parsed, dict):
            return None
        return self._stamp(parsed, prefix="analysis", time_key="timestamp")

    def run_flare_detective(
        self,
        flare_logs: list[dict[str, Any]] | None = None,
        food_logs: list[dict[str, Any]] | None = None,
        *,
        condition: str | None = None,
    ) -> dict[str, Any]:
        prompt = (
            f"Investigate what triggered the latest flare for a user with {_condition_text(condition)}.\n"
            f"Flare logs: {json.dumps(_most_recent(flare_logs), default=str)}\n"
            f"Food logs: {json.dumps(_most_recent(food_logs), default=str)}\n"
            "Return JSON only with keys spike_detected, suspects (list of {name, reason, confidence}) and conclusion."
        )
        report = self._extract_object(prompt, default=FLARE_REPORT_DEFAULT)
        return self._stamp(report, prefix="detective", time_key="date_generated")

    def chat_with_coach(self, message: str, *, condition: str | None = None) -> dict[str, Any]:
        prompt = (
            f"You are a supportive health coach for a user with {_condition_text(condition)}.\n"
            f"User message: {message.strip()}\n"
            "Return JSON only with keys reply and suggestions (list of short follow-up prompts)."
        )
        return self._extract_object(
            prompt,
            preferred=ModelTier.SECONDARY,
            default={"reply": COACH_FALLBACK_REPLY, "suggestions": []},
        )

    def get_smart_reminders(self, *, condition: str | None = None) -> list[dict[str, Any]]:
        prompt = (
            f"Generate timely reminders for a user with {_condition_text(condition)}. "
            "Return a JSON array of {type: weather|cycle|habit|general, text, priority: low|high}."
        )
        # Reminders are advisory; a provider outage yields none rather than an error.
        try:
            return self._extract_list(prompt, key="reminders", preferred=ModelTier.SECONDARY)
        except ProviderError as exc:
            logger.warning("smart reminders unavailable (%s)", exc.category)
            return []

    def generate_safe_meal_plan(self, *, condition: str | None = None, known_triggers: list[str] | None = None) -> dict[str, Any]:
        lines = [f"Plan one day of meals that are safe for a user with {_condition_text(condition)}."]
        if _listing(known_triggers):
            lines.append(f"Avoid these known triggers: {_listing(known_triggers)}.")
        lines.append("Return JSON only with keys breakfast, lunch, dinner and snack, each a recipe object.")
        return self._extract_object("\n".join(lines), preferred=ModelTier.SECONDARY, default=MEAL_PLAN_DEFAULT)

    def get_marketplace_recommendations(
        self,
        *,
        condition: str | None = None,
        known_triggers: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        lines = [f"Recommend products suited to a user with {_condition_text(condition)}."]
        if _listing(known_triggers):
            lines.append(f"Every product must be free from: {_listing(known_triggers)}.")
        lines.append(
            "Return a JSON array of {name, brand, category: supplement|food|skincare|device, price, "
            "match_score (0-100), match_reason}."
        )
        return self._extract_list("\n".join(lines), key="products", preferred=ModelTier.SECONDARY)

    def get_global_insights(self, condition: str | None = None) -> list[dict[str, Any]]:
        prompt = (
            f"Summarize community-wide trends for people living with {_condition_text(condition)}. "
            "Return a JSON array of {topic, stat, trend: up|down|neutral}."
        )
        return self._extract_list(prompt, key="insights", preferred=ModelTier.SECONDARY)
