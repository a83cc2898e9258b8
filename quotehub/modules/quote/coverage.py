"""Coverage type normalization."""

from __future__ import annotations

import re

from quotehub.core.config_models import ProviderConfig

CANONICAL_COVERAGE_TYPES = frozenset(
    {
        "life",
        "health",
        "hospital_indemnity",
        "dental",
        "orthodontic",
        "vision",
        "eye_care",
        "disability",
    }
)

_ALIAS_MAP = {
    "life insurance": "life",
    "term life": "life",
    "whole life": "life",
    "health insurance": "health",
    "medical": "health",
    "dental insurance": "dental",
    "vision insurance": "vision",
    "hospital indemnity": "hospital_indemnity",
    "hospital indemnity insurance": "hospital_indemnity",
    "disability insurance": "disability",
}

_SEPARATOR_RE = re.compile(r"[\s\-_]+")


def normalize_coverage_type(raw: str | None) -> str:
    """Map a caller coverage label onto a canonical key.

    Separators are ignored, so "Term Life", "term-life" and "term_life" all
    resolve through the same alias.
    """
    text = _SEPARATOR_RE.sub(" ", str(raw or "")).strip().lower()
    if not text:
        return ""
    return _ALIAS_MAP.get(text, text.replace(" ", "_"))


def is_known_coverage_type(coverage_type: str, extra: set[str] | frozenset[str] = frozenset()) -> bool:
    return coverage_type in CANONICAL_COVERAGE_TYPES or coverage_type in extra


def map_coverage_type_for_provider(config: ProviderConfig, coverage_type: str) -> str:
    """Translate a canonical coverage type into the provider's product code."""
    return config.coverage_type_mapping.get(coverage_type, coverage_type)
