#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Panel username derivation and suffix probing.

A user gets the username ``base`` if it is free.  When another identity
already holds it we try ``base_1``, ``base_2`` ... and stop at the first
candidate that is either free or already ours.  Ownership is read from
the note the panel stores with the account.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional, Tuple, TypeVar

from apis.errors import UsernameSpaceExhausted
from apis.models import PanelUser, WebIdentity

log = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 32
MAX_SUFFIX_ATTEMPTS = 20

_INVALID_CHARS = re.compile(r"[^a-z0-9_-]")
_UNDERSCORE_RUNS = re.compile(r"_+")

T = TypeVar("T", bound=PanelUser)


def sanitize_username(value: str) -> str:
    cleaned = _INVALID_CHARS.sub("_", value.lower())
    cleaned = _UNDERSCORE_RUNS.sub("_", cleaned)
    return cleaned[:MAX_USERNAME_LENGTH]


def build_username_with_suffix(base: str, suffix: int) -> str:
    """Append ``_<suffix>`` and trim the base so the result fits."""
    if suffix == 0:
        return base
    suffix_value = f"_{suffix}"
    max_base_length = max(1, MAX_USERNAME_LENGTH - len(suffix_value))
    return f"{base[:max_base_length]}{suffix_value}"


def username_from_identity(identity: WebIdentity, prefix: str = "") -> str:
    preferred = identity.vpn_username or identity.preferred_username
    email_prefix = identity.email.split("@")[0] if identity.email else ""
    raw = preferred or email_prefix or identity.id
    return sanitize_username(f"{prefix}{raw}")


def is_owned_by(record: PanelUser, identity_id: str, index: int = 0) -> bool:
    """Return True if *record* belongs to *identity_id*.

    Accounts created before notes were written have an empty note; those
    are only claimed at the unsuffixed base name.
    """
    if record.note:
        return identity_id in record.note
    return index == 0


def resolve_username(
    identity: WebIdentity,
    lookup: Callable[[str], Optional[T]],
    prefix: str = "",
) -> Tuple[str, Optional[T]]:
    """Probe candidates until one is free or owned by *identity*.

    *lookup* returns the panel record for a username or ``None`` when the
    panel does not know it.  Returns ``(username, record)``; *record* is
    ``None`` for a free name.
    """
    base = username_from_identity(identity, prefix)
    for index in range(MAX_SUFFIX_ATTEMPTS):
        candidate = build_username_with_suffix(base, index)
        existing = lookup(candidate)
        if existing is None:
            return candidate, None
        if is_owned_by(existing, identity.id, index):
            return candidate, existing
        log.debug("username %s is taken by another identity", candidate)
    raise UsernameSpaceExhausted(
        f"no free username for {identity.id} after {MAX_SUFFIX_ATTEMPTS} attempts (base {base!r})"
    )
