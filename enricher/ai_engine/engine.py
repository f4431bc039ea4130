"""AI Enricher — optional augmentation lane backed by a chat-completions endpoint.

The AI lane provides UX copy and second opinions without authority: it never
overwrites a deterministic field. Its output lands in dedicated fields
(benefit snippet, FAQ, synonyms, dosage/timing text, safety flags, conflicts,
goal scores), and disagreements surface only as warnings.

Calls are content-addressed: the canonical input JSON is hashed and the result
cached under ``model:version:sha256``, so each distinct input is sent at most
once per cache lifetime. Every failure degrades to an empty result.
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

import httpx

from enricher.ai_engine.accounting import TokenAccounting
from enricher.ai_engine.cache import EnrichmentCache
from enricher.ai_engine.rate_limiter import RateLimiter, estimate_tokens
from enricher.config.settings import AIConfig, RetryConfig
from enricher.pipeline.models import EnrichedProduct, ParsedProduct, RawProduct, Warn, is_populated
from enricher.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

ENRICHMENT_VERSION = 1

SYSTEM_PROMPT = "You are a product enrichment engine. Reply STRICT JSON per schema."

GOALS = ("preworkout", "strength", "endurance", "lean_muscle", "recovery", "weight_loss", "wellness")
FILL_FIELDS = ("form", "flavor", "net_weight_g", "servings", "serving_size_g")
SYNONYM_LANGUAGES = ("en", "ru", "et")
AI_SOURCE = "ai"
AI_CONFIDENCE = 0.5

PARSED_CORE_FIELDS = (
    "form",
    "flavor",
    "net_weight_g",
    "servings",
    "servings_min",
    "servings_max",
    "serving_size_g",
    "goal_tags",
    "diet_tags",
)

RETRYABLE_STATUS = 429


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_prompt(canonical_input: str) -> str:
    goals = ", ".join(GOALS)
    return (
        "Enrich the supplement product described by the JSON input below.\n\n"
        "Return one JSON object with exactly these keys:\n"
        f"  fill: object; for each of {', '.join(FILL_FIELDS)} that the input leaves "
        "unknown, your best value or null\n"
        "  generate: object with benefit_snippet (one sentence, max 160 chars), "
        "faq (array of {q, a}, max 4), synonyms_multi (object with en, ru, et arrays), "
        "dosage_text, timing_text\n"
        "  safety_flags: array of {flag, confidence, evidence} for claims or risks "
        "the text does not support\n"
        "  conflicts: array of {field, det_value, ai_value, evidence} where the input's "
        "parsed values contradict the text\n"
        f"  goal_scores: object keyed by {goals}; each value is {{score, confidence}} in [0, 1]\n\n"
        "Use only facts present in the input. Prefer null over guessing.\n\n"
        f"INPUT:\n{canonical_input}"
    )


class AIEnricher:
    """Chat-completions client with content-hash caching and shared rate limiting.

    Thread-safe: the httpx client, cache and limiter may be shared by worker threads.
    """

    def __init__(
        self,
        config: AIConfig,
        cache: EnrichmentCache,
        rate_limiter: RateLimiter,
        retry: RetryConfig | None = None,
        accounting: TokenAccounting | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._cache = cache
        self._limiter = rate_limiter
        self._retry = retry or RetryConfig()
        self._accounting = accounting or TokenAccounting()
        self._clock = clock
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_s),
            transport=transport,
        )
        self._stats_lock = threading.Lock()
        self._calls = 0
        self._cache_hits = 0

    @property
    def is_active(self) -> bool:
        return self._config.is_active

    @property
    def accounting(self) -> TokenAccounting:
        return self._accounting

    @property
    def calls_made(self) -> int:
        with self._stats_lock:
            return self._calls

    @property
    def cache_hits(self) -> int:
        with self._stats_lock:
            return self._cache_hits

    def close(self) -> None:
        self._client.close()

    # --- Cache key ---

    def build_input(self, raw: RawProduct, parsed: ParsedProduct | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": raw.id,
            "name": raw.name,
            "slug": raw.slug,
            "sku": raw.sku,
            "search_text": raw.search_text,
            "brand": raw.brand_name or raw.brand_slug,
            "categories": list(raw.category_names),
            "attrs": {key: list(values) for key, values in raw.dynamic_attrs.items()},
        }
        if self._config.cache_key_mode == "raw_parsed" and parsed is not None:
            payload["parsed"] = {name: getattr(parsed, name) for name in PARSED_CORE_FIELDS}
        return payload

    def cache_key(self, input_hash: str) -> str:
        return f"{self._config.model}:{self._config.prompt_version}:{input_hash}"

    # --- Enrichment ---

    def enrich(self, raw: RawProduct, parsed: ParsedProduct | None = None) -> dict[str, Any]:
        """Return the AI result for a product, from cache when possible.

        Returns an empty dict when the lane is inactive or the call fails.
        """
        if not self.is_active:
            return {}

        canonical = canonical_json(self.build_input(raw, parsed))
        input_hash = sha256_hex(canonical)
        key = self.cache_key(input_hash)

        cached = self._cache.get(key)
        if cached is not None:
            with self._stats_lock:
                self._cache_hits += 1
            logger.debug("AI cache hit", extra={"product_id": raw.id, "cache_key": key})
            return cached

        logger.debug("AI cache miss", extra={"product_id": raw.id, "cache_key": key})
        content = self._complete(build_prompt(canonical), raw.id)
        if content is None:
            return {}

        result = {
            **content,
            "ai_input_hash": input_hash,
            "ai_enrichment_ts": int(self._clock()),
            "enrichment_version": ENRICHMENT_VERSION,
        }
        self._cache.put(key, result)
        return result

    def _backoff_s(self, attempt: int) -> float:
        base = self._retry.backoff_base_ms / 1000.0
        max_delay = self._retry.backoff_max_ms / 1000.0
        delay = min(base * (2 ** attempt), max_delay)
        if self._retry.jitter:
            delay += random.uniform(0, base)
        return delay

    def _complete(self, prompt: str, product_id: str) -> dict[str, Any] | None:
        body = {
            "model": self._config.model,
            "temperature": 0,
            "max_tokens": self._config.max_completion_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self._config.api_key}"}
        estimated = estimate_tokens(SYSTEM_PROMPT + prompt) + self._config.max_completion_tokens

        for attempt in range(self._retry.max_retries + 1):
            self._limiter.acquire(estimated)
            try:
                response = self._client.post("/chat/completions", json=body, headers=headers)
            except httpx.HTTPError as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.AI_REQUEST_FAILED,
                    message=str(exc),
                    suppressed=True,
                    product_id=product_id,
                    stage="ai_enricher",
                )
                return None

            if response.status_code == RETRYABLE_STATUS or response.status_code >= 500:
                self._limiter.on_rate_limit_hit()
                if attempt < self._retry.max_retries:
                    logger.warning(
                        "AI request throttled, retrying",
                        extra={
                            "product_id": product_id,
                            "status": response.status_code,
                            "attempt": attempt + 1,
                        },
                    )
                    self._sleep(self._backoff_s(attempt))
                    continue
                emit_structured_error(
                    logger,
                    code=ErrorCode.AI_RATE_LIMITED,
                    message=f"HTTP {response.status_code} after {attempt + 1} attempts",
                    suppressed=True,
                    product_id=product_id,
                    stage="ai_enricher",
                )
                return None

            if not response.is_success:
                emit_structured_error(
                    logger,
                    code=ErrorCode.AI_REQUEST_FAILED,
                    message=f"HTTP {response.status_code}",
                    suppressed=True,
                    product_id=product_id,
                    stage="ai_enricher",
                    details={"body": response.text[:500]},
                )
                return None

            with self._stats_lock:
                self._calls += 1
            return self._parse_response(response, product_id)

        return None

    def _parse_response(self, response: httpx.Response, product_id: str) -> dict[str, Any] | None:
        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("AI response body is not a JSON object")
            usage = data.get("usage") or {}
            if not isinstance(usage, dict):
                raise ValueError("AI response usage is not a JSON object")
            if usage:
                self._accounting.record_chat_completion_usage(
                    self._config.model,
                    int(usage.get("prompt_tokens", 0)),
                    int(usage.get("completion_tokens", 0)),
                    int(usage["total_tokens"]) if "total_tokens" in usage else None,
                )
            content = data["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.AI_RESPONSE_INVALID,
                message=str(exc),
                suppressed=True,
                product_id=product_id,
                stage="ai_enricher",
            )
            return None
        if not isinstance(parsed, dict):
            emit_structured_error(
                logger,
                code=ErrorCode.AI_RESPONSE_INVALID,
                message="AI response is not a JSON object",
                suppressed=True,
                product_id=product_id,
                stage="ai_enricher",
            )
            return None
        return parsed


# --- Result merge ---


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _faq(value: Any) -> list[dict[str, str]]:
    faq = []
    for item in _dict_list(value):
        q, a = _str_or_none(item.get("q")), _str_or_none(item.get("a"))
        if q and a:
            faq.append({"q": q, "a": a})
    return faq


def _synonyms(value: Any) -> dict[str, list[str]]:
    if not isinstance(value, dict):
        return {}
    synonyms = {}
    for lang in SYNONYM_LANGUAGES:
        words = value.get(lang)
        if isinstance(words, list):
            cleaned = [w.strip() for w in words if isinstance(w, str) and w.strip()]
            if cleaned:
                synonyms[lang] = cleaned
    return synonyms


def _unit_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return min(1.0, max(0.0, float(value)))


def _goal_scores(value: Any) -> dict[str, dict[str, float]]:
    if not isinstance(value, dict):
        return {}
    scores = {}
    for goal in GOALS:
        entry = value.get(goal)
        if not isinstance(entry, dict):
            continue
        score = _unit_float(entry.get("score"))
        if score is None:
            continue
        confidence = _unit_float(entry.get("confidence"))
        scores[goal] = {"score": score, "confidence": confidence if confidence is not None else 0.0}
    return scores


def merge_ai_result(
    product: EnrichedProduct, ai_result: dict[str, Any]
) -> tuple[EnrichedProduct, list[Warn]]:
    """Attach AI output to an enriched product.

    Deterministic fields are never changed. AI conflicts become FIELD_CONFLICT
    warnings and safety flags become UNSUPPORTED_CLAIM warnings.
    """
    generate = ai_result.get("generate") if isinstance(ai_result.get("generate"), dict) else {}
    fill = ai_result.get("fill") if isinstance(ai_result.get("fill"), dict) else {}
    safety_flags = [f for f in _dict_list(ai_result.get("safety_flags")) if _str_or_none(f.get("flag"))]
    conflicts = [c for c in _dict_list(ai_result.get("conflicts")) if _str_or_none(c.get("field"))]

    warnings: list[Warn] = []
    for conflict in conflicts:
        warnings.append(
            Warn.field_conflict(
                product.id,
                str(conflict["field"]),
                conflict.get("det_value"),
                conflict.get("ai_value"),
                evidence=_str_or_none(conflict.get("evidence")),
            )
        )
    for flag in safety_flags:
        warnings.append(
            Warn.unsupported_claim(product.id, str(flag["flag"]), evidence=_str_or_none(flag.get("evidence")))
        )

    ts = ai_result.get("ai_enrichment_ts")
    version = ai_result.get("enrichment_version")
    ai_fields = {
        "benefit_snippet": _str_or_none(generate.get("benefit_snippet")),
        "faq": _faq(generate.get("faq")),
        "synonyms_multi": _synonyms(generate.get("synonyms_multi")),
        "dosage_text": _str_or_none(generate.get("dosage_text")),
        "timing_text": _str_or_none(generate.get("timing_text")),
        "safety_flags": safety_flags,
        "ai_conflicts": conflicts,
        "goal_scores": _goal_scores(ai_result.get("goal_scores")),
        "ai_fill": {k: v for k, v in fill.items() if k in FILL_FIELDS and v is not None},
        "ai_input_hash": _str_or_none(ai_result.get("ai_input_hash")),
        "ai_enrichment_ts": ts if isinstance(ts, int) else None,
        "enrichment_version": version if isinstance(version, int) else None,
    }
    provenance = {k: v for k, v in product.provenance.items() if k not in ai_fields}
    confidence = {k: v for k, v in product.confidence.items() if k not in ai_fields}
    for name, value in ai_fields.items():
        if is_populated(value):
            provenance[name] = AI_SOURCE
            confidence[name] = AI_CONFIDENCE

    merged = product.model_copy(
        update={
            **ai_fields,
            "provenance": provenance,
            "confidence": confidence,
            "warnings": [*product.warnings, *(w.render() for w in warnings)],
        }
    )
    return merged, warnings
