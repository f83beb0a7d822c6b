#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Turn identity claims into the values a panel expects.

Every helper follows the same rule: use the claim when it is present and
valid, otherwise fall back to the configured default.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, List, Optional

from apis.claims import to_number
from apis.models import EXPIRE_NEVER_TS, UNSET, Inbound, WebIdentity

RESET_STRATEGIES = ("no_reset", "day", "week", "month", "year")
DEFAULT_RESET_STRATEGY = "month"

# numbers above this are taken as milliseconds
MS_THRESHOLD = 1_000_000_000_000


def gb_to_bytes(gb: float) -> int:
    return int(gb * 1024 ** 3)


def _claim(identity: WebIdentity, name: str) -> Any:
    cfg = identity.vpn_config
    if cfg is None:
        return UNSET
    return getattr(cfg, name)


def traffic_limit_bytes(identity: WebIdentity, default_gb: float = 0) -> Optional[int]:
    """Return the data limit in bytes, or ``None`` for unlimited.

    A limit of 0 GB means unlimited; it never becomes a zero-byte quota.
    """
    limit = to_number(_claim(identity, "traffic_limit_gb"))
    if limit is UNSET:
        limit = default_gb or 0
    if limit <= 0:
        return None
    return gb_to_bytes(limit)


def normalize_reset_strategy(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in RESET_STRATEGIES else None


def reset_strategy(identity: WebIdentity) -> str:
    return (
        normalize_reset_strategy(_claim(identity, "data_limit_reset_strategy"))
        or DEFAULT_RESET_STRATEGY
    )


def parse_date(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 or RFC 2822 date; naive values are UTC."""
    text = value.strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def expiry_seconds(identity: WebIdentity) -> int:
    """Return the expiry as epoch seconds; ``EXPIRE_NEVER_TS`` when unset."""
    expiry = _claim(identity, "expiry_date")
    if expiry is None or expiry is UNSET:
        return EXPIRE_NEVER_TS

    if isinstance(expiry, str) and not expiry.strip().isdecimal():
        parsed = parse_date(expiry) if expiry.strip() else None
        if parsed is None:
            return EXPIRE_NEVER_TS
        seconds = math.floor(parsed.timestamp())
    else:
        number = to_number(expiry)
        if number is UNSET:
            return EXPIRE_NEVER_TS
        if number > MS_THRESHOLD:
            number = number / 1000
        seconds = math.floor(number)
    # nothing outlives the sentinel
    return min(seconds, EXPIRE_NEVER_TS)


def normalize_proxy_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        items = [item.strip().lower() if isinstance(item, str) else "" for item in value]
        return [item for item in items if item]
    if isinstance(value, str):
        trimmed = value.strip().lower()
        return [trimmed] if trimmed else []
    return []


def select_proxy_types(
    identity: WebIdentity, inbounds: Iterable[Inbound], known: Iterable[str]
) -> List[str]:
    """Pick the protocol types to enable for *identity*.

    Requested types survive only if the panel has an inbound for them and
    we know how to configure them.  Without a usable request, every
    available known type is enabled, and failing that every known type.
    """
    known = list(known)
    available: List[str] = []
    for inbound in inbounds:
        if inbound.type and inbound.type not in available:
            available.append(inbound.type)

    selected: List[str] = []
    for ptype in normalize_proxy_list(_claim(identity, "proxies")):
        if ptype in available and ptype in known and ptype not in selected:
            selected.append(ptype)
    if selected:
        return selected

    fallback = [ptype for ptype in available if ptype in known]
    if fallback:
        return fallback
    return known
