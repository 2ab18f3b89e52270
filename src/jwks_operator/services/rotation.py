"""
Key rotation: merging key sets and applying update strategies.

Rolling updates keep previously published keys so tokens signed just before a
certificate rotation still validate; immediate updates replace the set.
"""

from collections.abc import Awaitable, Callable

from jwks_operator.constants import STRATEGY_IMMEDIATE, STRATEGY_ROLLING
from jwks_operator.errors import InvalidConfigurationError
from jwks_operator.models import JSONWebKeySet


def merge_key_sets(
    old: JSONWebKeySet | None, new: JSONWebKeySet
) -> JSONWebKeySet:
    """
    Merge ``new`` into ``old``.

    Old keys keep their position; new keys whose ``kid`` is already present
    are dropped, so a ``kid`` never appears twice.
    """
    if old is None or old.is_empty():
        return JSONWebKeySet(keys=list(new.keys))

    seen = old.kids
    merged = list(old.keys)
    for key in new.keys:
        if key.kid not in seen:
            merged.append(key)
            seen.add(key.kid)
    return JSONWebKeySet(keys=merged)


def should_update(old: JSONWebKeySet | None, new: JSONWebKeySet | None) -> bool:
    """True when ``new`` carries at least one key ``old`` does not have."""
    if new is None or new.is_empty():
        return False
    if old is None or old.is_empty():
        return True
    return bool(new.kids - old.kids)


def prune_old_keys(
    key_set: JSONWebKeySet, max_old_keys: int, ttl: float
) -> JSONWebKeySet:
    """Drop keys that aged out of the retention window."""
    # TODO: decide whether retention is by key age (oldKeysTTL) or by count
    # (maxOldKeys); keys carry no creation time yet, so nothing is pruned.
    return key_set


class UpdateStrategy:
    """Applies the configured update strategy to a freshly generated key set."""

    def __init__(self, name: str, keep_old_keys: bool):
        self.name = name
        self.keep_old_keys = keep_old_keys

    async def apply(
        self,
        new: JSONWebKeySet,
        read_current: Callable[[], Awaitable[JSONWebKeySet | None]],
    ) -> JSONWebKeySet:
        """
        Compute the key set to store.

        Args:
            new: Key set generated from the current certificate
            read_current: Reads the currently stored key set, if any

        Raises:
            InvalidConfigurationError: If the strategy is unknown
        """
        if self.name == STRATEGY_ROLLING:
            if not self.keep_old_keys:
                return new
            current = await read_current()
            if current is None:
                return new
            return merge_key_sets(current, new)

        if self.name == STRATEGY_IMMEDIATE:
            return new

        raise InvalidConfigurationError(f"Unknown update strategy: {self.name}")
