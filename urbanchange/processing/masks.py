"""
Threshold configurations and binary built-up masks.

A configuration is an ordered list of (index, comparator, value) rules that
are ANDed together, e.g. NDBI > 0 and NDVI < 0.3. Pixels whose index value is
undefined (NaN) never satisfy a rule, so no-data never counts as built-up.
"""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

import numpy as np

from ..exceptions import InvalidThresholdConfig
from .indices import INDEX_FUNCTIONS
from .raster import IndexRaster, Mask

logger = logging.getLogger(__name__)

COMPARATORS = {
    ">": np.greater,
    "<": np.less,
    ">=": np.greater_equal,
    "<=": np.less_equal,
}

COMPARATOR_ALIASES = {
    ">": ">", "gt": ">",
    "<": "<", "lt": "<",
    ">=": ">=", "≥": ">=", "ge": ">=", "gte": ">=",
    "<=": "<=", "≤": "<=", "le": "<=", "lte": "<=",
}

_RULE_RE = re.compile(r"^\s*([A-Za-z]+)\s*(>=|<=|≥|≤|>|<)\s*([-+]?[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)\s*$")


@dataclass(frozen=True)
class ThresholdRule:
    index: str
    comparator: str
    value: float

    def __post_init__(self):
        index = str(self.index).strip().upper()
        if index not in INDEX_FUNCTIONS:
            raise InvalidThresholdConfig(
                f"Unknown index '{self.index}'; expected one of {sorted(INDEX_FUNCTIONS)}"
            )
        comparator = COMPARATOR_ALIASES.get(str(self.comparator).strip().lower())
        if comparator is None:
            raise InvalidThresholdConfig(
                f"Unsupported comparator '{self.comparator}' for {index}; use one of {sorted(COMPARATORS)}"
            )
        if isinstance(self.value, bool):
            raise InvalidThresholdConfig(f"Threshold for {index} must be a number, got {self.value!r}")
        try:
            value = float(self.value)
        except (TypeError, ValueError):
            raise InvalidThresholdConfig(f"Threshold for {index} must be a number, got {self.value!r}")
        if not np.isfinite(value):
            raise InvalidThresholdConfig(f"Threshold for {index} must be finite, got {self.value!r}")
        object.__setattr__(self, "index", index)
        object.__setattr__(self, "comparator", comparator)
        object.__setattr__(self, "value", value)

    def apply(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        with np.errstate(invalid="ignore"):
            result = COMPARATORS[self.comparator](values, self.value)
        return result & np.isfinite(values)

    def __str__(self) -> str:
        return f"{self.index}{self.comparator}{self.value:g}"


@dataclass(frozen=True)
class ThresholdConfig:
    """Named conjunction of threshold rules."""

    name: str
    rules: Tuple[ThresholdRule, ...]

    def __post_init__(self):
        if not self.name or not str(self.name).strip():
            raise InvalidThresholdConfig("Threshold configuration needs a name")
        rules = tuple(self.rules)
        if not rules:
            raise InvalidThresholdConfig(f"Threshold configuration '{self.name}' has no rules")
        for rule in rules:
            if not isinstance(rule, ThresholdRule):
                raise InvalidThresholdConfig(f"'{self.name}' contains a non-rule entry: {rule!r}")
        object.__setattr__(self, "rules", rules)

    @property
    def indices(self) -> List[str]:
        seen: List[str] = []
        for rule in self.rules:
            if rule.index not in seen:
                seen.append(rule.index)
        return seen

    @property
    def description(self) -> str:
        return " AND ".join(str(rule) for rule in self.rules)


ORIGINAL = ThresholdConfig("original", (ThresholdRule("NDBI", ">", 0.0), ThresholdRule("NDVI", "<", 0.3)))
LENIENT = ThresholdConfig("lenient", (ThresholdRule("NDBI", ">", -0.1), ThresholdRule("NDVI", "<", 0.4)))
STRICT = ThresholdConfig("strict", (ThresholdRule("NDBI", ">", 0.1), ThresholdRule("NDVI", "<", 0.2)))
EBBI_ONLY = ThresholdConfig("ebbi", (ThresholdRule("EBBI", ">", 0.0),))

DEFAULT_CONFIG = ORIGINAL
NAMED_CONFIGS: Dict[str, ThresholdConfig] = {c.name: c for c in (ORIGINAL, LENIENT, STRICT, EBBI_ONLY)}


def parse_rule(spec: Union[str, Mapping[str, Any], Sequence, ThresholdRule]) -> ThresholdRule:
    """Rule from "NDBI>0", {"index": .., "comparator": .., "value": ..} or (index, op, value)."""
    if isinstance(spec, ThresholdRule):
        return spec
    if isinstance(spec, str):
        match = _RULE_RE.match(spec)
        if not match:
            raise InvalidThresholdConfig(f"Cannot parse threshold rule '{spec}'")
        return ThresholdRule(match.group(1), match.group(2), float(match.group(3)))
    if isinstance(spec, Mapping):
        missing = [k for k in ("index", "comparator", "value") if k not in spec]
        if missing:
            raise InvalidThresholdConfig(f"Threshold rule {dict(spec)} is missing {missing}")
        return ThresholdRule(spec["index"], spec["comparator"], spec["value"])
    if isinstance(spec, Sequence) and len(spec) == 3:
        return ThresholdRule(*spec)
    raise InvalidThresholdConfig(f"Cannot interpret threshold rule {spec!r}")


def parse_threshold_config(spec: Union[Mapping[str, Any], ThresholdConfig], name: str = None) -> ThresholdConfig:
    """Configuration from {"name": .., "rules": [...]} or a registered name."""
    if isinstance(spec, ThresholdConfig):
        return spec
    if isinstance(spec, str):
        if spec in NAMED_CONFIGS:
            return NAMED_CONFIGS[spec]
        raise InvalidThresholdConfig(f"Unknown threshold configuration '{spec}'")
    if not isinstance(spec, Mapping):
        raise InvalidThresholdConfig(f"Cannot interpret threshold configuration {spec!r}")
    config_name = spec.get("name", name)
    rules = spec.get("rules")
    if rules is None or isinstance(rules, (str, bytes)) or not isinstance(rules, Iterable):
        raise InvalidThresholdConfig(f"Threshold configuration '{config_name}' needs a list of rules")
    return ThresholdConfig(config_name, tuple(parse_rule(r) for r in rules))


def parse_threshold_configs(specs: Iterable[Any]) -> List[ThresholdConfig]:
    """Validate a list of configurations; names must be unique."""
    configs = [parse_threshold_config(spec) for spec in specs]
    if not configs:
        raise InvalidThresholdConfig("At least one threshold configuration is required")
    names = [c.name for c in configs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise InvalidThresholdConfig(f"Duplicate threshold configuration name(s): {duplicates}")
    return configs


def parse_cli_threshold(text: str) -> ThresholdConfig:
    """Configuration from the command-line form NAME=RULE[,RULE...]."""
    if "=" not in text:
        raise InvalidThresholdConfig(f"Expected NAME=RULE[,RULE], got '{text}'")
    name, rules = text.split("=", 1)
    return ThresholdConfig(name.strip(), tuple(parse_rule(r) for r in rules.split(",") if r.strip()))


def build_mask(indices: Mapping[str, np.ndarray], config: ThresholdConfig) -> np.ndarray:
    """Conjunction of every rule in `config`, elementwise."""
    missing = [name for name in config.indices if name not in indices]
    if missing:
        raise KeyError(f"Configuration '{config.name}' needs index value(s) for {missing}")
    result = None
    for rule in config.rules:
        passed = rule.apply(indices[rule.index])
        result = passed if result is None else (result & passed)
    return result


def build_mask_raster(index_rasters: Sequence[IndexRaster], config: ThresholdConfig) -> Mask:
    """Mask over the shared grid of `index_rasters`."""
    if not index_rasters:
        raise ValueError("At least one index raster is required")
    grid = index_rasters[0].grid
    for other in index_rasters[1:]:
        grid.check_aligned(other.grid, what=f"indices for '{config.name}'")
    values = build_mask({r.name: r.values for r in index_rasters}, config)
    return Mask(config.name, grid, values)
