"""
Per-field reconciliation policy.

A handler's ``get`` may attach *property options*: a tree shaped like the
resource configuration whose leaves name a policy for that field path.

- ``Policy.CREATE_ONLY``: the declared value is sent as-is but never
  compared once the resource exists.
- ``Policy.IMMUTABLE_RESPONSE``: the field is server-assigned. Its live value
  replaces the declared one for comparison and write-back, so it never
  causes drift.
- ``ImmutableWhen(predicate)``: on an array, only live elements matching the
  predicate are server-owned; the rest stay under declaration control.
- ``ForEach(policy)`` (or a one-element list) applies a policy to every
  element of an array.

``evaluate`` walks a declared value against its live counterpart and
returns the effective write payload plus the paths that drifted.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from converge.core.errors import ConfigurationError


class Policy(str, Enum):
    CREATE_ONLY = "CREATE_ONLY"
    IMMUTABLE_RESPONSE = "IMMUTABLE_RESPONSE"


class _Missing:
    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Missing:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Missing:
        return self


MISSING: Any = _Missing()


@dataclass(frozen=True)
class ImmutableWhen:
    """Marks live array elements matching ``predicate`` as server-owned."""

    predicate: Callable[[Any], bool]

    def matches(self, value: Any) -> bool:
        return bool(self.predicate(value))


@dataclass(frozen=True)
class ForEach:
    """Applies ``policy`` to every element of an array."""

    policy: Any


def matches_prefix(prefix: str) -> ImmutableWhen:
    """Server-owned when the value is ``prefix`` or starts with ``prefix:``."""
    pattern = re.compile(rf"^{re.escape(prefix)}(:|$)")
    return ImmutableWhen(lambda value: isinstance(value, str) and pattern.match(value) is not None)


@dataclass(frozen=True)
class Evaluation:
    """Effective write payload and the field paths that drifted."""

    payload: Any
    drift: tuple[str, ...] = ()

    @property
    def has_drift(self) -> bool:
        return bool(self.drift)


def evaluate(declared: Any, live: Any = MISSING, policy: Any = None) -> Evaluation:
    """Classify a declared value against its live counterpart.

    With ``live`` missing the resource does not exist yet: the payload is
    built for creation and drift is not evaluated.
    """
    creating = live is MISSING
    payload, drift = _evaluate(declared, live, policy, (), creating)
    return Evaluation(payload=payload, drift=() if creating else tuple(drift))


def _evaluate(
    declared: Any,
    live: Any,
    policy: Any,
    path: tuple[str | int, ...],
    creating: bool,
) -> tuple[Any, list[str]]:
    policy = _normalize(policy)

    if policy is Policy.IMMUTABLE_RESPONSE:
        return copy.deepcopy(live), []
    if policy is Policy.CREATE_ONLY:
        return _plain(declared), []
    if isinstance(policy, ImmutableWhen):
        return _splice(declared, live, policy, path, creating)
    if declared is MISSING and live is MISSING:
        return MISSING, []

    both_present = declared is not MISSING and live is not MISSING
    if policy is None or isinstance(policy, Mapping):
        if (
            _is_mapping_or_missing(declared)
            and _is_mapping_or_missing(live)
            and (policy is not None or both_present)
        ):
            return _evaluate_mapping(declared, live, policy or {}, path, creating)
    if policy is None or isinstance(policy, ForEach):
        if (
            _is_sequence_or_missing(declared)
            and _is_sequence_or_missing(live)
            and (policy is not None or both_present)
        ):
            return _evaluate_sequence(declared, live, policy.policy if policy else None, path, creating)

    payload = _plain(declared)
    if creating or payload == live:
        return payload, []
    return payload, [_render(path)]


def _evaluate_mapping(
    declared: Any,
    live: Any,
    policy: Mapping[str, Any],
    path: tuple[str | int, ...],
    creating: bool,
) -> tuple[Any, list[str]]:
    declared_map = declared if declared is not MISSING else {}
    live_map = live if live is not MISSING else {}
    keys = list(declared_map) + [key for key in live_map if key not in declared_map]

    payload: dict[Any, Any] = {}
    drift: list[str] = []
    for key in keys:
        value, sub_drift = _evaluate(
            declared_map.get(key, MISSING),
            live_map.get(key, MISSING),
            policy.get(key),
            path + (key,),
            creating,
        )
        if value is not MISSING:
            payload[key] = value
        drift.extend(sub_drift)

    if declared is MISSING and not payload:
        return MISSING, drift
    return payload, drift


def _evaluate_sequence(
    declared: Any,
    live: Any,
    policy: Any,
    path: tuple[str | int, ...],
    creating: bool,
) -> tuple[Any, list[str]]:
    declared_seq = list(declared) if declared is not MISSING else []
    live_seq = list(live) if live is not MISSING else []

    payload: list[Any] = []
    drift: list[str] = []
    for index in range(max(len(declared_seq), len(live_seq))):
        value, sub_drift = _evaluate(
            declared_seq[index] if index < len(declared_seq) else MISSING,
            live_seq[index] if index < len(live_seq) else MISSING,
            policy,
            path + (index,),
            creating,
        )
        if value is not MISSING:
            payload.append(value)
        drift.extend(sub_drift)

    if declared is MISSING and not payload:
        return MISSING, drift
    return payload, drift


def _splice(
    declared: Any,
    live: Any,
    when: ImmutableWhen,
    path: tuple[str | int, ...],
    creating: bool,
) -> tuple[Any, list[str]]:
    # Server-owned live elements keep their positions; remaining positions
    # take the declared elements the server does not own, in order.
    if creating or not _is_sequence(live):
        payload = _plain(declared)
        if creating:
            return payload, []
        owned = [item for item in (declared if _is_sequence(declared) else []) if not when.matches(item)]
        return payload, [_render(path)] if owned or live is not MISSING else []

    own = iter([item for item in (declared if _is_sequence(declared) else []) if not when.matches(item)])
    effective: list[Any] = []
    for item in live:
        if when.matches(item):
            effective.append(copy.deepcopy(item))
            continue
        replacement = next(own, MISSING)
        if replacement is not MISSING:
            effective.append(_plain(replacement))
    effective.extend(_plain(item) for item in own)

    drift = [] if effective == list(live) else [_render(path)]
    if declared is MISSING and not effective:
        return MISSING, drift
    return effective, drift


def _normalize(policy: Any) -> Any:
    if policy is None or isinstance(policy, (Policy, ImmutableWhen, ForEach, Mapping)):
        return policy
    if isinstance(policy, str):
        try:
            return Policy(policy)
        except ValueError:
            raise ConfigurationError(f"Unknown property policy '{policy}'") from None
    if isinstance(policy, (list, tuple)):
        if len(policy) != 1:
            raise ConfigurationError("Array policies must hold exactly one element policy")
        inner = policy[0]
        if isinstance(inner, ImmutableWhen):
            return inner
        if callable(inner):
            return ImmutableWhen(inner)
        return ForEach(inner)
    if callable(policy):
        return ImmutableWhen(policy)
    raise ConfigurationError(f"Unsupported property policy {policy!r}")


def _plain(value: Any) -> Any:
    """Deep copy ``value`` turning read-only mappings into dicts."""
    if value is MISSING:
        return MISSING
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return copy.deepcopy(value)


def _is_mapping_or_missing(value: Any) -> bool:
    return value is MISSING or isinstance(value, Mapping)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _is_sequence_or_missing(value: Any) -> bool:
    return value is MISSING or _is_sequence(value)


def _render(path: tuple[str | int, ...]) -> str:
    rendered = ""
    for part in path:
        if isinstance(part, int):
            rendered += f"[{part}]"
        else:
            rendered += f".{part}" if rendered else str(part)
    return rendered or "<root>"
