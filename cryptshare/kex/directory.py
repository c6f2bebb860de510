"""
Identity directory adapters.

The handshake always asks a directory for the claimed sender's keys; it never
trusts key material carried inside a handshake message.
"""

from __future__ import annotations

import inspect
from typing import Any, Optional, Protocol, runtime_checkable

from .errors import AuthenticationFailed
from .events import log_security_event
from .identity import PublicKeys


@runtime_checkable
class IdentityDirectory(Protocol):
    # May be sync or async
    def get_public_keys(self, user_id: str) -> PublicKeys: ...


async def _maybe_await(x: Any) -> Any:
    return await x if inspect.isawaitable(x) else x


async def fetch_public_keys(directory: IdentityDirectory, user_id: str) -> PublicKeys:
    keys = await _maybe_await(directory.get_public_keys(user_id))
    if keys is None:
        raise AuthenticationFailed(f"unknown user: {user_id}", peer_id=user_id)
    return keys


class InMemoryDirectory:
    """Dict-backed registry, the trusted source of public keys in tests and demos."""

    def __init__(self):
        self._keys: dict[str, PublicKeys] = {}

    def register(self, user_id: str, keys: PublicKeys) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        self._keys[str(user_id)] = keys

    def get_public_keys(self, user_id: str) -> Optional[PublicKeys]:
        return self._keys.get(user_id)


class PinningDirectory:
    """
    Trust-on-first-use wrapper around another directory.

    - first lookup for a user pins the returned keys
    - later lookups must return the same keys, otherwise AuthenticationFailed
      (unless allow_rotation, which re-pins and logs the change)
    """

    def __init__(self, upstream: IdentityDirectory, *, allow_rotation: bool = False):
        self._upstream = upstream
        self._pins: dict[str, PublicKeys] = {}
        self.allow_rotation = allow_rotation

    async def get_public_keys(self, user_id: str) -> PublicKeys:
        keys = await fetch_public_keys(self._upstream, user_id)
        pinned = self._pins.get(user_id)

        if pinned is None:
            self._pins[user_id] = keys
            return keys
        if pinned.same_as(keys):
            return pinned

        log_security_event("IDENTITY_KEY_CHANGED", peer_id=user_id, rotated=self.allow_rotation)
        if self.allow_rotation:
            self._pins[user_id] = keys
            return keys
        raise AuthenticationFailed(
            "peer key mismatch (possible MitM or rotation)", peer_id=user_id
        )

    def pinned(self, user_id: str) -> Optional[PublicKeys]:
        return self._pins.get(user_id)
