"""Filename heuristics for model type, precision, and projector pairing."""

from __future__ import annotations

import re
from enum import Enum

_MMPROJ_PATTERN = re.compile(r"[-_.]*mmproj[-_.].+\.gguf$", flags=re.IGNORECASE)
_PRECISION_PATTERNS = (
    re.compile(r"[._-](Q\d+_K[_A-Z]*)", flags=re.IGNORECASE),
    re.compile(r"[._-](Q\d+_\d+)", flags=re.IGNORECASE),
    re.compile(r"[._-](Q\d+)", flags=re.IGNORECASE),
    re.compile(r"[._-](F\d+)", flags=re.IGNORECASE),
)
_QUANT_RANKS = {
    "f32": 100,
    "f16": 90,
    "f16_f32": 85,
    "q8_0": 80,
    "q6_k": 70,
    "q5_k_m": 65,
    "q5_k_s": 60,
    "q5_1": 58,
    "q5_0": 55,
    "q4_k_m": 50,
    "q4_k_s": 45,
    "q4_1": 43,
    "q4_0": 40,
    "q3_k_l": 35,
    "q3_k_m": 30,
    "q3_k_s": 25,
    "q2_k": 20,
    "q2_k_s": 15,
}
_SEPARATORS = re.compile(r"[-_.\s]+")


class ModelType(str, Enum):
    LLM = "llm"
    VISION = "vision"
    PROJECTION = "projection"


def is_projection_model(filename: str) -> bool:
    return _MMPROJ_PATTERN.search(filename) is not None


def extract_precision(filename: str) -> str | None:
    """Return the quantization tag embedded in a GGUF filename, if any."""
    for pattern in _PRECISION_PATTERNS:
        matched = pattern.search(filename)
        if matched is not None:
            return matched.group(1)
    return None


def quant_rank(precision: str | None) -> int:
    if not precision:
        return -1
    return _QUANT_RANKS.get(precision.lower(), -1)


def model_stem(filename: str) -> str:
    """Normalize a filename down to its family stem for projector pairing."""
    stem = filename.rsplit("/", 1)[-1]
    if stem.lower().endswith(".gguf"):
        stem = stem[: -len(".gguf")]
    precision = extract_precision(stem)
    if precision:
        index = stem.lower().rfind(precision.lower())
        if index > 0:
            stem = stem[:index]
    stem = re.sub(r"mmproj", " ", stem, flags=re.IGNORECASE)
    return _SEPARATORS.sub("-", stem).strip("-").lower()


def compatible_projectors(filename: str, projector_names: list[str]) -> list[str]:
    """Projection files whose family stem matches the model's stem."""
    stem = model_stem(filename)
    if not stem:
        return []
    matches = []
    for candidate in projector_names:
        candidate_stem = model_stem(candidate)
        if not candidate_stem:
            continue
        if stem.startswith(candidate_stem) or candidate_stem.startswith(stem):
            matches.append(candidate)
    return sorted(matches)


def recommend_projector(filename: str, projector_names: list[str]) -> str | None:
    """Pick the projector whose precision best matches the model's precision."""
    if not projector_names:
        return None
    if len(projector_names) == 1:
        return projector_names[0]

    by_quality = sorted(
        projector_names,
        key=lambda name: quant_rank(extract_precision(name)),
        reverse=True,
    )
    model_precision = extract_precision(filename)
    model_rank = quant_rank(model_precision)
    if model_precision is None or model_rank == -1:
        return by_quality[0]

    for name in projector_names:
        precision = extract_precision(name)
        if precision is not None and precision.lower() == model_precision.lower():
            return name

    at_or_above = [
        name for name in projector_names if quant_rank(extract_precision(name)) >= model_rank
    ]
    if at_or_above:
        return min(at_or_above, key=lambda name: quant_rank(extract_precision(name)))
    return by_quality[0]
