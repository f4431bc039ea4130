"""UnitParser — net weight, serving size, serving counts and per-unit figures.

Each figure is taken from the first source that yields a plausible value, in the
order attribute, regex, derived. Afterwards the net weight and the serving count
are cross-checked against serving_size_g and corrected when one of them is
clearly off, e.g. a per-serving weight entered as the package weight.
"""

from __future__ import annotations

import re

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.pipeline.text import parse_decimal, parse_int
from enricher.stages.base import (
    ATTR_CAPSULE_COUNT,
    ATTR_NET_WEIGHT,
    ATTR_SERVINGS,
    ATTR_TABLET_COUNT,
    CAPSULE_TOKEN_RE,
    COUNT_BASED_FORMS,
    TABLET_TOKEN_RE,
    StageResult,
    first_attr,
    product_text,
)

ATTRIBUTE_CONFIDENCE = 0.95
REGEX_CONFIDENCE = 0.8
DERIVED_CONFIDENCE = 0.7
COUNT_FALLBACK_CONFIDENCE = 0.6
CORRECTED_CONFIDENCE = 0.75
UNIT_EVIDENCE_CONFIDENCE = 0.55

MAX_SERVING_SIZE_G = 500.0
MAX_NET_WEIGHT_G = 100_000.0
MAX_SERVINGS = 1000
MAX_UNIT_COUNT = 1000
MAX_UNITS_PER_SERVING = 20
MAX_UNIT_MASS_G = 5.0

_NUM = r"(\d+(?:[.,]\d+)?)"
_UNIT_WORDS = (
    r"(?:capsules?|caps|vcaps|softgels?|tablets?|tabs|pehmekapsl\w*|kapsl\w*|tablett\w*"
    r"|капсул\w*|таблет\w*)"
)
_VEG = r"(?:veg(?:gie|etarian|an)?\s+)?"

SERVING_SIZE_FORWARD_RE = re.compile(
    _NUM + r"\s*(g|mg|ml)\s*(?:(?:per|/)\s*(?:serving|portsjon|annus|порци)\w*|serving\b)"
)
SERVING_SIZE_REVERSE_RE = re.compile(
    r"(?:serving\s+size|per\s+serving|portsjoni?\s+suurus|portsjon|annus|scoop)\s*:?\s*\(?\s*"
    + _NUM
    + r"\s*(g|mg|ml)\b"
)
SERVING_ANCHOR_RE = re.compile(r"portsjon|serving")
PARENTHETICAL_AMOUNT_RE = re.compile(r"\(\s*" + _NUM + r"\s*(g|mg|ml)\s*\)")
SERVING_WINDOW = 120

NET_WEIGHT_RE = re.compile(_NUM + r"\s*(kg|g|l|ml)\b")
_PER_CONTEXT_AFTER_RE = re.compile(
    r"\s*(?:per|/|x)\s*(?:serving|portsjon|annus|scoop|capsule|caps|softgel|tablet|kapsl|tablett"
    r"|tab|day|päevas)"
)
_PER_CONTEXT_BEFORE_RE = re.compile(
    r"(?:serving\s+size|per\s+serving|portsjon\w*|annus\w*|scoop\w*"
    r"|per\s+(?:capsule|softgel|tablet|caps|kapsl|tablett)\w*)\s*:?\s*\(?\s*$"
)

SERVINGS_RANGE_RE = re.compile(
    r"(\d{1,3})\s*[-–]\s*(\d{1,3})\s*(?:servings|annust|portsjonit|portsjoni|порций|порции)\b"
)
SERVINGS_RE = re.compile(r"(\d{1,4})\s*(?:servings|annust|portsjonit|portsjoni|порций|порции)\b")
_RANGE_TAIL_RE = re.compile(r"\d\s*[-–]\s*$")

UNIT_COUNT_RE = re.compile(r"(\d{1,4})\s*" + _VEG + _UNIT_WORDS + r"\b")
_DOSING_BEFORE_RE = re.compile(
    r"(?:take|võta|võtta|kasuta|use|per\s+serving|serving\s+size|portsjon\w*|annus\w*)\s*:?\s*$"
)
_DOSING_AFTER_RE = re.compile(
    r"\s*(?:per\s+(?:serving|day|portsjon)|daily|a\s+day|päevas|ööpäevas|portsjon)"
)

UNITS_PER_SERVING_RES = (
    re.compile(r"(?:take|võta|võtta|kasuta|use)\s+(\d{1,2})\s*" + _VEG + _UNIT_WORDS),
    re.compile(
        r"(?:per\s+serving|serving\s+size|portsjon\w*|annus\w*)\s*:?\s*(\d{1,2})\s*"
        + _VEG
        + _UNIT_WORDS
    ),
    re.compile(
        r"(\d{1,2})\s*"
        + _VEG
        + _UNIT_WORDS
        + r"\s*(?:per\s+(?:serving|day)|daily|a\s+day|päevas|ööpäevas)"
    ),
)

UNIT_MASS_RES = (
    re.compile(
        r"per\s+(?:capsule|softgel|tablet|caps|kapsel|kapsli|tablett|tableti)\w*\s*:?\s*"
        + _NUM
        + r"\s*(mcg|µg|mg|g)\b"
    ),
    re.compile(r"\b1\s*" + _VEG + _UNIT_WORDS + r"\s*\(\s*" + _NUM + r"\s*(mcg|µg|mg|g)\s*\)"),
    re.compile(
        _NUM + r"\s*(mcg|µg|mg|g)\s*(?:per|/)\s*(?:capsule|softgel|tablet|caps|kapsel|kapsli|tablett)"
    ),
)


def _to_grams(value: float, unit: str) -> float:
    if unit in ("kg", "l"):
        return value * 1000
    if unit == "mg":
        return value / 1000
    if unit in ("mcg", "µg"):
        return value / 1_000_000
    return value


def _overlaps(span: tuple[int, int], spans: list[tuple[int, int]]) -> bool:
    return any(span[0] < end and start < span[1] for start, end in spans)


def find_serving_size(text: str) -> tuple[float | None, list[tuple[int, int]]]:
    """Largest plausible serving size in grams, plus the spans of every serving-size reading."""
    candidates: list[float] = []
    spans: list[tuple[int, int]] = []

    def consider(number: str, unit: str, span: tuple[int, int]) -> None:
        value = parse_decimal(number)
        if value is None:
            return
        spans.append(span)
        grams = _to_grams(value, unit)
        if unit == "mg" and grams < 1:
            return
        if 0 < grams <= MAX_SERVING_SIZE_G:
            candidates.append(grams)

    for regex in (SERVING_SIZE_FORWARD_RE, SERVING_SIZE_REVERSE_RE):
        for match in regex.finditer(text):
            consider(match.group(1), match.group(2), match.span(1))

    for anchor in SERVING_ANCHOR_RE.finditer(text):
        window = text[anchor.end() : anchor.end() + SERVING_WINDOW]
        match = PARENTHETICAL_AMOUNT_RE.search(window)
        if match:
            offset = anchor.end()
            consider(match.group(1), match.group(2), (offset + match.start(1), offset + match.end(1)))

    return (max(candidates) if candidates else None), spans


def find_net_weight(text: str, serving_spans: list[tuple[int, int]]) -> float | None:
    """Largest package weight in grams, skipping per-serving and per-unit amounts."""
    candidates: list[float] = []
    for match in NET_WEIGHT_RE.finditer(text):
        if _overlaps(match.span(1), serving_spans):
            continue
        if _PER_CONTEXT_AFTER_RE.match(text, match.end()):
            continue
        if _PER_CONTEXT_BEFORE_RE.search(text[max(0, match.start() - 30) : match.start()]):
            continue
        value = parse_decimal(match.group(1))
        if value is None:
            continue
        grams = _to_grams(value, match.group(2))
        if 0 < grams <= MAX_NET_WEIGHT_G:
            candidates.append(grams)
    return max(candidates) if candidates else None


def find_servings_range(text: str) -> tuple[int, int] | None:
    for match in SERVINGS_RANGE_RE.finditer(text):
        low, high = sorted((int(match.group(1)), int(match.group(2))))
        if 0 < low < high <= MAX_SERVINGS:
            return low, high
    return None


def find_servings(text: str) -> int | None:
    for match in SERVINGS_RE.finditer(text):
        if _RANGE_TAIL_RE.search(text[max(0, match.start() - 4) : match.start()]):
            continue
        value = int(match.group(1))
        if 0 < value <= MAX_SERVINGS:
            return value
    return None


def find_unit_count(text: str) -> int | None:
    """Largest capsule/tablet count that is not part of a dosing instruction."""
    candidates: list[int] = []
    for match in UNIT_COUNT_RE.finditer(text):
        if _DOSING_BEFORE_RE.search(text[max(0, match.start() - 30) : match.start()]):
            continue
        if _DOSING_AFTER_RE.match(text, match.end()):
            continue
        value = int(match.group(1))
        if 2 <= value <= MAX_UNIT_COUNT:
            candidates.append(value)
    return max(candidates) if candidates else None


def find_units_per_serving(text: str) -> int | None:
    for regex in UNITS_PER_SERVING_RES:
        match = regex.search(text)
        if match:
            value = int(match.group(1))
            if 1 <= value <= MAX_UNITS_PER_SERVING:
                return value
    return None


def find_unit_mass(text: str) -> float | None:
    for regex in UNIT_MASS_RES:
        match = regex.search(text)
        if not match:
            continue
        value = parse_decimal(match.group(1))
        if value is None:
            continue
        grams = _to_grams(value, match.group(2))
        if 0 < grams <= MAX_UNIT_MASS_G:
            return round(grams, 6)
    return None


def _extreme_ratio(a: float, b: float) -> float:
    low, high = sorted((a, b))
    return high / low if low > 0 else float("inf")


class UnitParser:
    name = "unit_parser"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        delta = EnrichmentDelta()
        warnings: list[Warn] = []
        text = product_text(raw).lower()

        # Serving size
        serving_size, serving_spans = find_serving_size(text)
        if serving_size is not None:
            delta.set("serving_size_g", serving_size, REGEX_CONFIDENCE, "regex")

        # Net weight
        net_weight: float | None = None
        weight_attr = first_attr(raw, ATTR_NET_WEIGHT)
        if weight_attr is not None:
            net_weight = parse_decimal(weight_attr)
            if net_weight is not None and net_weight > 0:
                delta.set("net_weight_g", net_weight, ATTRIBUTE_CONFIDENCE, "attribute", evidence=weight_attr)
            else:
                net_weight = None
                warnings.append(Warn.unit_ambiguity(raw.id, "net_weight_g", evidence=weight_attr))
        if net_weight is None:
            net_weight = find_net_weight(text, serving_spans)
            if net_weight is not None:
                delta.set("net_weight_g", net_weight, REGEX_CONFIDENCE, "regex")

        # Servings: attribute, then range, then explicit count
        servings: int | None = None
        servings_range: tuple[int, int] | None = None
        servings_attr = first_attr(raw, ATTR_SERVINGS)
        if servings_attr is not None:
            servings = parse_int(servings_attr)
            if servings is not None and 0 < servings <= MAX_SERVINGS:
                delta.set("servings", servings, ATTRIBUTE_CONFIDENCE, "attribute", evidence=servings_attr)
            else:
                servings = None
                warnings.append(Warn.unit_ambiguity(raw.id, "servings", evidence=servings_attr))
        if servings is None:
            servings = find_servings(text)
            if servings is not None:
                delta.set("servings", servings, REGEX_CONFIDENCE, "regex")
            else:
                servings_range = find_servings_range(text)
                if servings_range is not None:
                    delta.set("servings_min", servings_range[0], REGEX_CONFIDENCE, "regex")
                    delta.set("servings_max", servings_range[1], REGEX_CONFIDENCE, "regex")

        # Count-based figures
        unit_count: int | None = None
        for key in (ATTR_TABLET_COUNT, ATTR_CAPSULE_COUNT):
            count_attr = first_attr(raw, key)
            if count_attr is None:
                continue
            value = parse_int(count_attr)
            if value is not None and 1 <= value <= MAX_UNIT_COUNT:
                unit_count = value
                delta.set("unit_count", value, ATTRIBUTE_CONFIDENCE, "attribute", evidence=count_attr)
                break
            warnings.append(Warn.unit_ambiguity(raw.id, "unit_count", evidence=count_attr))
        if unit_count is None:
            unit_count = find_unit_count(text)
            if unit_count is not None:
                delta.set("unit_count", unit_count, REGEX_CONFIDENCE, "regex")

        units_per_serving = find_units_per_serving(text)
        if units_per_serving is not None:
            delta.set("units_per_serving", units_per_serving, REGEX_CONFIDENCE, "regex")

        unit_mass = find_unit_mass(text)
        if unit_mass is not None:
            delta.set("unit_mass_g", unit_mass, REGEX_CONFIDENCE, "regex")

        if servings is None and servings_range is None and unit_count:
            derived_servings = unit_count // units_per_serving if units_per_serving else unit_count
            if derived_servings >= 1:
                servings = derived_servings
                delta.set("servings", servings, COUNT_FALLBACK_CONFIDENCE, "derived")

        # Derived net weight
        weight_from_servings = False
        if net_weight is None:
            if serving_size and servings:
                net_weight = round(serving_size * servings, 2)
                weight_from_servings = True
                delta.set("net_weight_g", net_weight, DERIVED_CONFIDENCE, "derived")
            elif unit_count and unit_mass:
                net_weight = round(unit_count * unit_mass, 2)
                delta.set("net_weight_g", net_weight, DERIVED_CONFIDENCE, "derived")

        count_based = so_far.form in COUNT_BASED_FORMS or unit_count is not None

        # Net weight sanity check against serving_size_g x servings
        if not weight_from_servings and not count_based and net_weight and serving_size and servings:
            expected = round(serving_size * servings, 2)
            if net_weight <= 1.5 * serving_size or net_weight < 0.6 * expected:
                extreme = _extreme_ratio(expected, net_weight) >= 8 or net_weight < 0.25 * serving_size
                if extreme and servings < 10:
                    warnings.append(
                        Warn.unit_ambiguity(
                            raw.id, "net_weight_g", evidence=f"{net_weight} -> {expected}"
                        )
                    )
                net_weight = expected
                weight_from_servings = True
                delta.set("net_weight_g", expected, CORRECTED_CONFIDENCE, "corrected")

        # Servings sanity check against net_weight_g / serving_size_g
        if not weight_from_servings and not count_based and servings and net_weight and serving_size:
            expected_servings = round(net_weight / serving_size)
            relative_error = (
                abs(servings - expected_servings) / expected_servings if expected_servings else 0.0
            )
            implausible = relative_error > 0.4 or not 8 <= servings <= 180
            if implausible and expected_servings != servings and 0 < expected_servings <= MAX_SERVINGS:
                if _extreme_ratio(expected_servings, servings) >= 8 and expected_servings < 10:
                    warnings.append(
                        Warn.unit_ambiguity(raw.id, "servings", evidence=f"{servings} -> {expected_servings}")
                    )
                servings = expected_servings
                delta.set("servings", expected_servings, CORRECTED_CONFIDENCE, "corrected")

        # Late form fallback from unit evidence
        if so_far.form is None and (unit_count or units_per_serving or unit_mass):
            tablet_only = TABLET_TOKEN_RE.search(text) and not CAPSULE_TOKEN_RE.search(text)
            form = "tabs" if tablet_only else "capsules"
            delta.set("form", form, UNIT_EVIDENCE_CONFIDENCE, "unit_evidence")

        return StageResult(delta=delta, warnings=warnings)
