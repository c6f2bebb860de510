from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Callable, Mapping, Optional

from dotenv import load_dotenv


PROTOCOL_VERSION = "SecureKEX-1.0"

_ENV_PREFIX = "CRYPTSHARE_"


@dataclass(frozen=True)
class KexSettings:
    """
    Tunables for the handshake engine and the replay validator.

    Resolution order in from_env():
      1) explicit overrides passed as keyword arguments
      2) os.environ (CRYPTSHARE_HANDSHAKE_WINDOW_MS, ...)
      3) dataclass defaults
    """
    protocol_version: str = PROTOCOL_VERSION
    handshake_window_ms: int = 30_000
    message_window_ms: int = 5 * 60 * 1000
    pending_ttl_ms: int = 60_000
    sweep_interval_s: float = 10.0

    def __post_init__(self) -> None:
        if not self.protocol_version:
            raise ValueError("protocol_version must be non-empty")
        for name in ("handshake_window_ms", "message_window_ms", "pending_ttl_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.sweep_interval_s <= 0:
            raise ValueError("sweep_interval_s must be positive")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        auto_dotenv: bool = False,
        dotenv_path: Optional[str] = None,
        dotenv_override: bool = False,
        **overrides,
    ) -> "KexSettings":
        if auto_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=dotenv_override)
        env = os.environ if environ is None else environ

        values = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, _PARSERS[f.name])
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **changes) -> "KexSettings":
        return replace(self, **changes)


def _coerce(name: str, raw: str, parse: Callable[[str], object]) -> object:
    try:
        return parse(raw.strip())
    except ValueError as e:
        raise ValueError(f"invalid value for {_ENV_PREFIX}{name.upper()}: {raw!r}") from e


_PARSERS: dict[str, Callable[[str], object]] = {
    "protocol_version": str,
    "handshake_window_ms": int,
    "message_window_ms": int,
    "pending_ttl_ms": int,
    "sweep_interval_s": float,
}
