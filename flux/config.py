"""Runtime settings for the Flux servers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

STORAGE_BACKENDS = ("file", "memory")

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class FluxSettings:
    """Settings loaded from the environment with fail-fast validation."""

    storage: str = "file"
    data_file: str = "data/flux.json"
    lock_timeout: float = 2.0
    log_level: str = "INFO"
    log_file: Optional[str] = None
    default_tax_rate: float = 10.0
    quote_valid_days: int = 30
    webhook_timeout: float = 10.0
    webhooks_enabled: bool = True
    delivery_retention_days: int = 7

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FluxSettings":
        env = os.environ if environ is None else environ
        return cls(
            storage=env.get("FLUX_STORAGE", "file"),
            data_file=env.get("FLUX_DATA_FILE", "data/flux.json"),
            lock_timeout=_get_float(env, "FLUX_LOCK_TIMEOUT", default=2.0, minimum=0.0),
            log_level=env.get("FLUX_LOG_LEVEL", "INFO"),
            log_file=env.get("FLUX_LOG_FILE") or None,
            default_tax_rate=_get_float(env, "FLUX_DEFAULT_TAX_RATE", default=10.0, minimum=0.0, maximum=100.0),
            quote_valid_days=_get_int(env, "FLUX_QUOTE_VALID_DAYS", default=30, minimum=0),
            webhook_timeout=_get_float(env, "FLUX_WEBHOOK_TIMEOUT", default=10.0, minimum=0.1),
            webhooks_enabled=_get_bool(env, "FLUX_WEBHOOKS_ENABLED", default=True),
            delivery_retention_days=_get_int(env, "FLUX_DELIVERY_RETENTION_DAYS", default=7, minimum=0),
        ).normalized()

    def normalized(self) -> "FluxSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        storage = self.storage.strip().lower()
        if storage not in STORAGE_BACKENDS:
            raise ValueError(f"FLUX_STORAGE must be one of: {', '.join(STORAGE_BACKENDS)}")
        if storage == "file" and not self.data_file.strip():
            raise ValueError("FLUX_DATA_FILE must be non-empty")
        log_level = self.log_level.strip().upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"FLUX_LOG_LEVEL is not a logging level: {self.log_level!r}")
        return FluxSettings(
            storage=storage,
            data_file=self.data_file.strip(),
            lock_timeout=self.lock_timeout,
            log_level=log_level,
            log_file=self.log_file,
            default_tax_rate=self.default_tax_rate,
            quote_valid_days=self.quote_valid_days,
            webhook_timeout=self.webhook_timeout,
            webhooks_enabled=self.webhooks_enabled,
            delivery_retention_days=self.delivery_retention_days,
        )

    @property
    def data_path(self) -> Path:
        return Path(self.data_file).expanduser()


def _get_float(env: Mapping[str, str], name: str, default: float, minimum: float, maximum: float = 1e9) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int, maximum: int = 100_000) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")
