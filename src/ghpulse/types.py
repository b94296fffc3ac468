"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Shared JSON aliases and literal vocabularies.
"""

from __future__ import annotations

from typing import Literal, TypeAlias

JSONPrimitive: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]
Document: TypeAlias = dict[str, JSONValue]

RefreshType = Literal["profile", "repos"]
RefreshPriority = Literal["low", "normal", "high"]
FreshnessTier = Literal["fresh", "stale", "expired"]

REFRESH_TYPES: tuple[RefreshType, ...] = ("profile", "repos")
REFRESH_PRIORITIES: tuple[RefreshPriority, ...] = ("low", "normal", "high")
