#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Plain data types shared by the panel adapters.

Nothing here talks to a panel.  ``WebIdentity`` is what the login layer
hands us, ``PanelUser`` is what we hand to the page template.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# 2099 is "never" as far as the panels are concerned.
EXPIRE_NEVER = datetime(2099, 5, 9, tzinfo=timezone.utc)
EXPIRE_NEVER_TS = int(EXPIRE_NEVER.timestamp())


class _Unset:
    """Marker for a claim that was never supplied."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

VPN_CONFIG_FIELDS = (
    "traffic_limit_gb",
    "data_limit_reset_strategy",
    "expiry_date",
    "proxies",
    "default_proxy",
)


@dataclass(frozen=True)
class VpnConfig:
    traffic_limit_gb: Any = UNSET
    data_limit_reset_strategy: Any = UNSET
    expiry_date: Any = UNSET
    proxies: Any = UNSET
    default_proxy: Any = UNSET

    def as_dict(self) -> Dict[str, Any]:
        """Return only the fields that were supplied."""
        return {
            name: getattr(self, name)
            for name in VPN_CONFIG_FIELDS
            if getattr(self, name) is not UNSET
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["VpnConfig"]:
        if not isinstance(data, dict):
            return None
        values = {name: data[name] for name in VPN_CONFIG_FIELDS if name in data}
        if not values:
            return None
        return cls(**values)


@dataclass(frozen=True)
class WebIdentity:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    vpn_username: Optional[str] = None
    preferred_username: Optional[str] = None
    vpn_config: Optional[VpnConfig] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "image": self.image,
            "vpn_username": self.vpn_username,
            "preferred_username": self.preferred_username,
        }
        if self.vpn_config is not None:
            data["vpn_config"] = self.vpn_config.as_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebIdentity":
        return cls(
            id=str(data["id"]),
            email=data.get("email"),
            name=data.get("name"),
            image=data.get("image"),
            vpn_username=data.get("vpn_username"),
            preferred_username=data.get("preferred_username"),
            vpn_config=VpnConfig.from_dict(data.get("vpn_config")),
        )


@dataclass(frozen=True)
class Inbound:
    type: Optional[str]
    tag: Optional[str]
    port: Optional[int] = None
    uuid: Optional[str] = None


@dataclass
class PanelUser:
    """Panel account normalised for display."""

    username: str
    used_traffic: Optional[int] = None
    data_limit: Optional[int] = None
    expire: Optional[int] = None
    note: Optional[str] = None
    status: Optional[str] = None
    subscription_url: Optional[str] = None
    links: List[str] = field(default_factory=list)
    uuid: Optional[str] = None
    short_uuid: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_unlimited(self) -> bool:
        return not self.data_limit

    @property
    def never_expires(self) -> bool:
        return not self.expire or self.expire >= EXPIRE_NEVER_TS

    def subscription_links(self) -> List[str]:
        if self.subscription_url:
            return [self.subscription_url]
        return list(self.links)
