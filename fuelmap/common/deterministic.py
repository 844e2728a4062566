"""Helpers for deterministic ordering and serialisation."""

from __future__ import annotations

import json
from typing import Any, Callable, Iterable, TypeVar

T = TypeVar("T")


def stable_sorted(items: Iterable[T], key: Callable[[T], object]) -> list[T]:
    return sorted(items, key=key)


def id_key(value: object) -> str:
    return str(value).strip()


def id_sort_key(value: object) -> tuple[int, int, str]:
    # Numeric ids sort numerically ahead of free-form ids.
    text = id_key(value)
    if text.lstrip("-").isdigit():
        return 0, int(text), text
    return 1, 0, text


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
