#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Map an identity-provider profile to a :class:`WebIdentity`.

Entitlement claims may sit at the top level of the profile or inside a
nested ``vpn`` object.  The top level wins.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Optional

from apis.models import UNSET, VpnConfig, WebIdentity

CLAIM_SOURCES = (
    lambda profile: profile,
    lambda profile: profile.get("vpn"),
)

# VpnConfig field -> profile claim name
ENTITLEMENT_CLAIMS = {
    "traffic_limit_gb": "PANEL_USER_TRAFFIC_LIMIT_GB",
    "data_limit_reset_strategy": "DATA_LIMIT_RESET_STRATEGY",
    "expiry_date": "PANEL_USER_EXPIRY_DATE",
    "proxies": "PANEL_USER_PROXIES",
    "default_proxy": "DEFAULT_PROXY",
}


def get_claim(profile: Mapping[str, Any], key: str) -> Any:
    """Return the first value found for *key*, or ``UNSET``.

    An explicit ``None`` counts as found, so a profile can clear a value
    (``PANEL_USER_EXPIRY_DATE: null`` means "never expires").
    """
    for source in CLAIM_SOURCES:
        scope = source(profile)
        if isinstance(scope, Mapping) and key in scope:
            return scope[key]
    return UNSET


def to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return UNSET
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else UNSET
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return UNSET
        if not math.isfinite(number):
            return UNSET
        return int(number) if number.is_integer() else number
    return UNSET


def to_string_array(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]
    if isinstance(value, str):
        return [value]
    return UNSET


def extract_entitlement(profile: Mapping[str, Any]) -> Optional[VpnConfig]:
    """Build a :class:`VpnConfig` from profile claims.

    Returns ``None`` when the profile carries no entitlement claim at all,
    in which case the configured defaults apply downstream.
    """
    values: Dict[str, Any] = {
        field: get_claim(profile, claim) for field, claim in ENTITLEMENT_CLAIMS.items()
    }
    values["traffic_limit_gb"] = to_number(values["traffic_limit_gb"])
    values["proxies"] = to_string_array(values["proxies"])

    supplied = {k: v for k, v in values.items() if v is not UNSET}
    if not supplied:
        return None
    return VpnConfig(**supplied)


def _optional_str(value: Any) -> Optional[str]:
    if value is UNSET or value is None:
        return None
    return str(value)


def map_profile_to_user(profile: Mapping[str, Any], user_id: Any) -> WebIdentity:
    """Return the identity the session layer stores after login."""
    return WebIdentity(
        id=str(user_id),
        email=_optional_str(profile.get("email")),
        name=_optional_str(profile.get("name")),
        image=_optional_str(profile.get("picture")),
        vpn_username=_optional_str(get_claim(profile, "vpn_username")),
        preferred_username=_optional_str(get_claim(profile, "preferred_username")),
        vpn_config=extract_entitlement(profile),
    )

