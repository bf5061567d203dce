"""
Palace Configuration

Configuration dataclasses for palacectl: store, governance, lifecycle and
corridor (including per-link fetch and auth settings).  Includes
load_config() for reading a JSON config file with silent fallback to
compiled defaults.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from palacectl.errors import ValidationError as _PalaceValidationError


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ConfigValidationError(_PalaceValidationError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        expected = (typ.__name__ if isinstance(typ, type)
                    else "|".join(t.__name__ for t in typ))
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """Workspace store configuration."""
    marker: str = ".palace"
    db_name: str = "memory.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.marker or os.sep in self.marker:
            errors.append(f"store.marker: invalid directory name {self.marker!r}")
        if not self.db_name:
            errors.append("store.db_name: must not be empty")
        return errors


@dataclass
class GovernanceConfig:
    """Proposal governance configuration."""
    confirmation_threshold: float = 0.7
    proposal_expiry_hours: int = 168
    max_content_length: int = 10000
    secret_patterns_enabled: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "governance.confirmation_threshold",
                     self.confirmation_threshold, 0.0, 1.0, float)
        _check_range(errors, "governance.proposal_expiry_hours",
                     self.proposal_expiry_hours, 1, 8760, int)
        _check_range(errors, "governance.max_content_length",
                     self.max_content_length, 100, 1000000, int)
        return errors


@dataclass
class LifecycleConfig:
    """Confidence lifecycle defaults (decay, weaken, prune)."""
    decay_days: int = 30
    decay_delta: float = 0.1
    weaken_delta: float = 0.1
    confidence_floor: float = 0.1

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "lifecycle.decay_days",
                     self.decay_days, 1, 3650, int)
        _check_range(errors, "lifecycle.decay_delta",
                     self.decay_delta, 0.0, 1.0, float)
        _check_range(errors, "lifecycle.weaken_delta",
                     self.weaken_delta, 0.0, 1.0, float)
        _check_range(errors, "lifecycle.confidence_floor",
                     self.confidence_floor, 0.0, 1.0, float)
        return errors


AuthType = Literal["none", "bearer", "basic", "header"]


@dataclass
class LinkAuthConfig:
    """Per-link auth. Values written as $VAR or ${VAR} come from the environment."""
    type: AuthType = "none"
    token: str = ""
    user: str = ""
    password: str = ""
    header: str = ""
    value: str = ""

    def validate(self, prefix: str) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.type not in ("none", "bearer", "basic", "header"):
            errors.append(f"{prefix}.type: unknown auth type {self.type!r}")
        elif self.type == "header" and not self.header:
            errors.append(f"{prefix}.header: required for header auth")
        return errors


@dataclass
class LinkConfig:
    """Fetch settings for one linked workspace."""
    url: str = ""
    ttl_hours: Optional[float] = None
    auth: LinkAuthConfig = field(default_factory=LinkAuthConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> LinkConfig:
        """Build a link config from a dict (nested ``auth`` allowed)."""
        kwargs = dict(d)
        if isinstance(kwargs.get("auth"), dict):
            kwargs["auth"] = LinkAuthConfig(**kwargs["auth"])
        return cls(**kwargs)

    def validate(self, prefix: str) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors = self.auth.validate(f"{prefix}.auth")
        if self.ttl_hours is not None:
            _check_range(errors, f"{prefix}.ttl_hours",
                         self.ttl_hours, 0.0, 8760.0, (int, float))
        return errors


@dataclass
class CorridorConfig:
    """Corridor store, promotion and fetch configuration."""
    base_path: Optional[str] = None  # None -> ~/.palace
    cache_ttl_hours: float = 24.0
    fetch_timeout_seconds: float = 30.0
    auto_promote_min_confidence: float = 0.8
    auto_promote_min_uses: int = 3
    links: Dict[str, LinkConfig] = field(default_factory=dict)

    def resolved_base_path(self) -> str:
        """Return the corridor root with ``~`` expanded."""
        return os.path.expanduser(self.base_path or os.path.join("~", ".palace"))

    def link_config(self, name: str) -> LinkConfig:
        """Return the config for a link name (defaults when absent)."""
        return self.links.get(name) or LinkConfig()

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "corridor.cache_ttl_hours",
                     self.cache_ttl_hours, 0.0, 8760.0, (int, float))
        _check_range(errors, "corridor.fetch_timeout_seconds",
                     self.fetch_timeout_seconds, 0.1, 600.0, (int, float))
        _check_range(errors, "corridor.auto_promote_min_confidence",
                     self.auto_promote_min_confidence, 0.0, 1.0, float)
        _check_range(errors, "corridor.auto_promote_min_uses",
                     self.auto_promote_min_uses, 0, 100000, int)
        for name, link in self.links.items():
            errors.extend(link.validate(f"corridor.links.{name}"))
        return errors


@dataclass
class PalaceConfig:
    """Top-level palacectl configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    governance: GovernanceConfig = field(default_factory=GovernanceConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    corridor: CorridorConfig = field(default_factory=CorridorConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PalaceConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "governance" in d:
            kwargs["governance"] = GovernanceConfig(**d["governance"])
        if "lifecycle" in d:
            kwargs["lifecycle"] = LifecycleConfig(**d["lifecycle"])
        if "corridor" in d:
            corridor = dict(d["corridor"])
            corridor["links"] = {
                name: LinkConfig.from_dict(link)
                for name, link in corridor.get("links", {}).items()
            }
            kwargs["corridor"] = CorridorConfig(**corridor)
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.governance.validate())
        errors.extend(self.lifecycle.validate())
        errors.extend(self.corridor.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> PalaceConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ConfigValidationError on invalid config values.

    Returns:
        PalaceConfig with values from file or defaults.

    Raises:
        ConfigValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = PalaceConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = PalaceConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError,
                AttributeError):
            cfg = PalaceConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ConfigValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
