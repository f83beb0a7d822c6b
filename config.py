#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Settings read from the process environment.

The entry points (`app.py`, `scripts/panel_check.py`) load `.env` once at
startup; the loaders here only read `os.environ`.

`LOGIN_URL` points at the OAuth login layer that fills `session["user"]`.
It has no default because this app does not serve a login page itself.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

PANEL_TYPES = ("marzban", "remnawave")


@dataclass(frozen=True)
class PanelConfig:
    panel_type: str
    panel_api_url: str
    traffic_limit_gb: float
    user_id_prefix: str
    remnawave_api_key: str
    marzban_username: str
    marzban_password: str
    marzban_user_inbounds: Optional[Dict[str, List[str]]]
    marzban_instance_url: str

    def missing_settings(self) -> List[str]:
        """Names of the env vars the selected panel still needs."""
        required = {
            "marzban": [
                ("MARZBAN_USERNAME", self.marzban_username),
                ("MARZBAN_PASSWORD", self.marzban_password),
                ("PANEL_API_URL", self.panel_api_url),
            ],
            "remnawave": [
                ("REMNAWAVE_API_KEY", self.remnawave_api_key),
                ("PANEL_API_URL", self.panel_api_url),
            ],
        }.get(self.panel_type)
        if required is None:
            return ["PANEL_TYPE"]
        return [name for name, value in required if not value]


@dataclass(frozen=True)
class AppConfig:
    secret_key: str
    login_url: str
    page_title: str


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _to_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


def parse_inbounds_override(raw: str) -> Optional[Dict[str, List[str]]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("MARZBAN_USER_INBOUNDS must be valid JSON") from exc
    if not isinstance(data, dict) or not all(
        isinstance(tags, list) and all(isinstance(t, str) for t in tags) for tags in data.values()
    ):
        raise ValueError("MARZBAN_USER_INBOUNDS must map protocol types to lists of inbound tags")
    return data


def load_panel_config() -> PanelConfig:
    panel_type = _env("PANEL_TYPE").lower()

    return PanelConfig(
        panel_type=panel_type,
        panel_api_url=_env("PANEL_API_URL"),
        traffic_limit_gb=_to_float("PANEL_USER_TRAFFIC_LIMIT_GB", 0),
        user_id_prefix=os.getenv("PANEL_USER_ID_PREFIX", ""),
        remnawave_api_key=_env("REMNAWAVE_API_KEY"),
        marzban_username=_env("MARZBAN_USERNAME"),
        marzban_password=os.getenv("MARZBAN_PASSWORD", ""),
        marzban_user_inbounds=parse_inbounds_override(_env("MARZBAN_USER_INBOUNDS")),
        marzban_instance_url=_env("MARZBAN_INSTANCE_URL"),
    )


def load_config() -> AppConfig:
    return AppConfig(
        secret_key=_env("SECRET_KEY"),
        login_url=_env("LOGIN_URL"),
        page_title=_env("PAGE_TITLE", "OAuth VPN Portal"),
    )
