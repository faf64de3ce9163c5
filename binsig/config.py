"""
binsig/config.py
================

Tuning knobs of the signature analysis.

A configuration can be built in code, from a dictionary or from a JSON
file::

    {
        "max_fixpoint_iterations": 50000,
        "max_format_string_length": 1024,
        "format_string_symbols": {"printf": 0, "my_log": 2},
        "default_calling_convention": "__cdecl"
    }

Unknown keys and values of the wrong type raise :class:`ConfigError`.
Semantically questionable but usable values are reported by
:meth:`AnalysisConfig.validate`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from binsig.errors import ConfigError
from binsig.fixpoint import DEFAULT_MAX_ITERATIONS
from binsig.memory_image import DEFAULT_MAX_STRING_LENGTH

logger = logging.getLogger(__name__)


# symbol name → index of the format string parameter
DEFAULT_FORMAT_STRING_SYMBOLS: Dict[str, int] = {
    "printf": 0,
    "sprintf": 1,
    "snprintf": 2,
    "fprintf": 1,
    "dprintf": 1,
    "scanf": 0,
    "sscanf": 1,
    "fscanf": 1,
}


@dataclass
class AnalysisConfig:
    """Configuration of :func:`binsig.signature.compute_function_signatures`."""
    max_fixpoint_iterations: int = DEFAULT_MAX_ITERATIONS
    max_format_string_length: int = DEFAULT_MAX_STRING_LENGTH
    format_string_symbols: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_FORMAT_STRING_SYMBOLS)
    )
    default_calling_convention: Optional[str] = None

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if self.max_fixpoint_iterations <= 0:
            warnings.append("max_fixpoint_iterations must be positive")
        if self.max_format_string_length <= 0:
            warnings.append("max_format_string_length must be positive")
        for name, index in self.format_string_symbols.items():
            if index < 0:
                warnings.append(f"format string index of {name} must be non-negative")
        return warnings

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AnalysisConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {}
        for key in ("max_fixpoint_iterations", "max_format_string_length"):
            if key in data:
                value = data[key]
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ConfigError(f"{key} must be an integer, got {value!r}")
                kwargs[key] = value
        if "format_string_symbols" in data:
            symbols = data["format_string_symbols"]
            if not isinstance(symbols, Mapping) or not all(
                isinstance(name, str) and isinstance(index, int) and not isinstance(index, bool)
                for name, index in symbols.items()
            ):
                raise ConfigError(
                    "format_string_symbols must map symbol names to integer indices"
                )
            kwargs["format_string_symbols"] = dict(symbols)
        if "default_calling_convention" in data:
            cconv = data["default_calling_convention"]
            if cconv is not None and not isinstance(cconv, str):
                raise ConfigError(
                    f"default_calling_convention must be a string, got {cconv!r}"
                )
            kwargs["default_calling_convention"] = cconv

        config = cls(**kwargs)
        for warning in config.validate():
            logger.warning("AnalysisConfig: %s", warning)
        return config

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> AnalysisConfig:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot load configuration from {path}: {exc}", cause=exc) from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration in {path} must be a JSON object")
        return cls.from_dict(data)


__all__ = ["DEFAULT_FORMAT_STRING_SYMBOLS", "AnalysisConfig"]
