from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple, Union

from catalog_sync.config import settings


class ConfigurationProvider(Protocol):
    def get(self, key: str, default: object = None) -> object: ...

    def has(self, key: str) -> bool: ...


class MappingConfigurationProvider:
    """Read-only settings backed by a plain dict (Settings.SYNC_OPTIONS by default)."""

    def __init__(self, values: Optional[Mapping[str, object]] = None):
        self._values: Dict[str, object] = dict(settings.SYNC_OPTIONS if values is None else values)

    def get(self, key: str, default: object = None) -> object:
        return self._values.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._values


def is_truthy(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("", "0", "false", "no", "off")


def dependencies_met(names: Iterable[str], config: ConfigurationProvider) -> bool:
    return all(is_truthy(config.get(name)) for name in names)


# ── Condition tree ────────────────────────────────────────────────────────────
#
# Leaf compares one setting to an expected value; All / Any combine
# children. An empty All holds, an empty Any does not.

@dataclass(frozen=True)
class Leaf:
    setting: str
    expected: object = "1"

    def evaluate(self, config: ConfigurationProvider) -> bool:
        return str(config.get(self.setting, "")) == str(self.expected)


@dataclass(frozen=True, init=False)
class All:
    items: Tuple[Condition, ...]

    def __init__(self, *items: Condition):
        object.__setattr__(self, "items", tuple(items))

    def evaluate(self, config: ConfigurationProvider) -> bool:
        return all(c.evaluate(config) for c in self.items)


@dataclass(frozen=True, init=False)
class Any(All):
    def evaluate(self, config: ConfigurationProvider) -> bool:
        return any(c.evaluate(config) for c in self.items)


Condition = Union[Leaf, All, Any]
