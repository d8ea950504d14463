from types import MappingProxyType
from typing import Mapping

from sessionmeter.models import ModelRates, TokenUsage

# USD per million tokens
RATE_TABLE: "Mapping[str, ModelRates]" = MappingProxyType(
    {
        "opus": ModelRates(input=5.0, output=25.0, cache_read=0.50, cache_creation=6.25),
        "sonnet": ModelRates(
            input=3.0, output=15.0, cache_read=0.30, cache_creation=3.75
        ),
        "haiku": ModelRates(input=1.0, output=5.0, cache_read=0.10, cache_creation=1.25),
    }
)

DEFAULT_FAMILY = "sonnet"

# checked in order, first substring match wins
_FAMILY_MARKERS: "tuple[str, ...]" = ("opus", "haiku", "sonnet")

_PER_MILLION = 1_000_000


def model_family(model_name: "str") -> "str":
    """
    maps a raw model identifier such as 'claude-haiku-4-5-20251001'
    onto its pricing family, falling back to the default family.
    """
    lowered = (model_name or "").lower()
    for marker in _FAMILY_MARKERS:
        if marker in lowered:
            return marker
    return DEFAULT_FAMILY


def rates_for(model_name: "str") -> "ModelRates":
    return RATE_TABLE[model_family(model_name)]


def cost(tokens: "TokenUsage", model_name: "str") -> "float":
    """
    estimates the USD cost of a token usage vector for the given model.
    Categories without a defined rate contribute nothing.
    """
    rates = rates_for(model_name)
    total = 0.0
    total += tokens.input / _PER_MILLION * rates.input
    total += tokens.output / _PER_MILLION * rates.output
    if tokens.cache_read and rates.cache_read:
        total += tokens.cache_read / _PER_MILLION * rates.cache_read
    if tokens.cache_creation and rates.cache_creation:
        total += tokens.cache_creation / _PER_MILLION * rates.cache_creation
    return total
