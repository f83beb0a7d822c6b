#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Marzban panel adapter.

The module-level functions are thin wrappers around the Marzban REST API.
:class:`MarzbanAPI` builds the reconciliation contract on top of them:
find the account owned by a web identity, create it when missing and keep
its limits in line with the identity's claims.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

import requests
SESSION = requests.Session()
from cachetools import TTLCache, cached

from apis.entitlement import (
    expiry_seconds,
    reset_strategy,
    select_proxy_types,
    traffic_limit_bytes,
)
from apis.errors import (
    PanelUnreachable,
    PanelUserCreateFailed,
    PanelUserNotFound,
    UsernameSpaceExhausted,
)
from apis.models import Inbound, PanelUser, WebIdentity
from apis.usernames import resolve_username

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "20"))
TOKEN_CACHE_TTL = int(os.getenv("TOKEN_CACHE_TTL", "3600"))
_token_cache = TTLCache(maxsize=16, ttl=TOKEN_CACHE_TTL)
_token_lock = RLock()

NOTE_PREFIX = "User by oauth-vpn-portal, oauth details: "
NOTE_MAX_LENGTH = 500

# Protocols we know how to configure, with the settings sent on create.
MARZBAN_PROXY_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "trojan": {},
    "vless": {"flow": ""},
    "vmess": {},
    "shadowsocks": {"method": "chacha20-ietf-poly1305"},
}


def get_headers(token: str) -> Dict[str, str]:
    """Return authorization header for the given bearer token."""
    return {"Authorization": f"Bearer {token}"}


def _url(panel_url: str, path: str) -> str:
    return urljoin(panel_url.rstrip('/') + '/', path)


def _request(method: str, panel_url: str, path: str, **kwargs) -> requests.Response:
    try:
        return SESSION.request(method, _url(panel_url, path), timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.RequestException as e:
        raise PanelUnreachable(f"{method} {path} failed: {str(e)[:200]}") from e


def _json(r: requests.Response, path: str) -> Any:
    try:
        return r.json()
    except ValueError as e:
        raise PanelUnreachable(f"{path} returned non-JSON body", status_code=r.status_code) from e


def _unexpected(r: requests.Response, path: str) -> PanelUnreachable:
    return PanelUnreachable(f"{path}: {r.status_code} {r.text[:200]}", status_code=r.status_code)


def error_messages(r: requests.Response) -> List[str]:
    """Collect the human-readable messages from a FastAPI error body."""
    try:
        body = r.json()
    except ValueError:
        return [r.text[:300]] if r.text else []
    detail = body.get("detail") if isinstance(body, dict) else body
    if isinstance(detail, str):
        return [detail]
    if isinstance(detail, list):
        out = []
        for item in detail:
            if isinstance(item, dict):
                loc = ".".join(str(x) for x in item.get("loc") or [])
                msg = str(item.get("msg") or item)
                out.append(f"{loc}: {msg}" if loc else msg)
            else:
                out.append(str(item))
        return out
    if isinstance(detail, dict):
        return [f"{k}: {v}" for k, v in detail.items()]
    return []


@cached(cache=_token_cache, lock=_token_lock)
def get_admin_token(panel_url: str, username: str, password: str) -> str:
    """Authenticate against the panel and return an access token."""
    path = "api/admin/token"
    r = _request(
        "POST",
        panel_url,
        path,
        data={"username": username, "password": password, "grant_type": "password"},
    )
    if r.status_code != 200:
        raise _unexpected(r, path)
    tok = (_json(r, path) or {}).get("access_token")
    if not tok:
        raise PanelUnreachable(f"{path}: no access_token in response", status_code=r.status_code)
    return tok


def get_user(panel_url: str, token: str, username: str) -> Optional[Dict]:
    """Fetch user details; ``None`` if the panel does not know *username*."""
    path = f"api/user/{username}"
    r = _request("GET", panel_url, path, headers=get_headers(token))
    if r.status_code == 404:
        return None
    if r.status_code != 200:
        raise _unexpected(r, path)
    return _json(r, path)


def create_user(panel_url: str, token: str, payload: Dict) -> Dict:
    """Create a user on the remote panel."""
    path = "api/user"
    r = _request(
        "POST",
        panel_url,
        path,
        json=payload,
        headers={**get_headers(token), "Content-Type": "application/json"},
    )
    if r.status_code in (200, 201):
        return _json(r, path)
    if 400 <= r.status_code < 500:
        messages = error_messages(r)
        raise PanelUserCreateFailed(
            f"Failed to create user {payload.get('username')}: {r.status_code} {'; '.join(messages)}",
            status_code=r.status_code,
            messages=messages,
            payload=payload,
        )
    raise _unexpected(r, path)


def modify_user(panel_url: str, token: str, username: str, payload: Dict) -> Dict:
    """Update quota, reset strategy or expiry for *username*."""
    path = f"api/user/{username}"
    r = _request(
        "PUT",
        panel_url,
        path,
        json=payload,
        headers={**get_headers(token), "Content-Type": "application/json"},
    )
    if r.status_code == 404:
        raise PanelUserNotFound(f"user {username} not found", status_code=404)
    if r.status_code != 200:
        raise _unexpected(r, path)
    return _json(r, path)


def remove_user(panel_url: str, token: str, username: str) -> bool:
    """Delete a user on the panel.  Returns False if it was already gone."""
    path = f"api/user/{username}"
    r = _request("DELETE", panel_url, path, headers=get_headers(token))
    if r.status_code == 404:
        return False
    if r.status_code != 200:
        raise _unexpected(r, path)
    return True


def get_inbounds(panel_url: str, token: str) -> Dict[str, List[Dict]]:
    """Return the panel's inbounds grouped by protocol type."""
    path = "api/inbounds"
    r = _request("GET", panel_url, path, headers=get_headers(token))
    if r.status_code != 200:
        raise _unexpected(r, path)
    data = _json(r, path)
    if not isinstance(data, dict):
        raise PanelUnreachable(f"{path}: unexpected payload", status_code=r.status_code)
    return data


# ---------- negotiation helpers ----------

def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_inbounds_map(inbounds: Iterable[Inbound], proxy_types: Iterable[str]) -> Dict[str, List[str]]:
    allowed = set(proxy_types)
    out: Dict[str, List[str]] = {}
    for inbound in inbounds:
        if not inbound.type or not inbound.tag:
            continue
        if inbound.type not in allowed:
            continue
        out.setdefault(inbound.type, []).append(inbound.tag)
    return out


def build_proxies_map(proxy_types: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    return {
        ptype: copy.deepcopy(MARZBAN_PROXY_DEFAULTS[ptype])
        for ptype in proxy_types
        if ptype in MARZBAN_PROXY_DEFAULTS
    }


def override_proxy_types(override: Dict[str, List[str]]) -> List[str]:
    raw_types = list(override)
    filtered = [ptype for ptype in raw_types if ptype in MARZBAN_PROXY_DEFAULTS]
    return filtered or raw_types


def build_note(identity: WebIdentity) -> str:
    note = NOTE_PREFIX + json.dumps(identity.as_dict(), ensure_ascii=False)
    return note[:NOTE_MAX_LENGTH]


def to_panel_user(obj: Dict, instance_url: Optional[str] = None) -> PanelUser:
    """Normalise a Marzban ``UserResponse`` for display."""
    sub_url = obj.get("subscription_url") or None
    if sub_url and instance_url and not sub_url.startswith(("http://", "https://")):
        sub_url = urljoin(instance_url.rstrip('/') + '/', sub_url.lstrip('/'))
    links = obj.get("links") if isinstance(obj.get("links"), list) else []
    return PanelUser(
        username=obj.get("username") or "",
        used_traffic=_to_int(obj.get("used_traffic")),
        data_limit=_to_int(obj.get("data_limit")) or None,
        expire=_to_int(obj.get("expire")) or None,
        note=obj.get("note"),
        status=obj.get("status"),
        subscription_url=sub_url,
        links=[str(x) for x in links],
        raw=obj,
    )


class MarzbanAPI:
    panel_type = "marzban"
    known_proxy_types = tuple(MARZBAN_PROXY_DEFAULTS)

    def __init__(self, config):
        self.panel_url = config.panel_api_url
        self.admin_username = config.marzban_username
        self.admin_password = config.marzban_password
        self.default_traffic_limit_gb = config.traffic_limit_gb
        self.username_prefix = config.user_id_prefix
        self.inbounds_override = config.marzban_user_inbounds
        self.instance_url = config.marzban_instance_url or config.panel_api_url

    @property
    def token(self) -> str:
        return get_admin_token(self.panel_url, self.admin_username, self.admin_password)

    def _find_panel_user_by_username(self, username: str) -> Optional[PanelUser]:
        obj = get_user(self.panel_url, self.token, username)
        if obj is None:
            return None
        return to_panel_user(obj, self.instance_url)

    def _resolve(self, identity: WebIdentity) -> Tuple[str, Optional[PanelUser]]:
        return resolve_username(identity, self._find_panel_user_by_username, self.username_prefix)

    def get_panel_user(self, identity: WebIdentity) -> PanelUser:
        try:
            username, user = self._resolve(identity)
        except UsernameSpaceExhausted as e:
            raise PanelUserNotFound(str(e)) from e
        if user is None:
            raise PanelUserNotFound(f"no panel user for {identity.id} (first free name {username})")
        log.debug("identity %s owns %s", identity.id, username)
        return user

    def _negotiate(self, identity: WebIdentity) -> Tuple[Dict[str, List[str]], Dict[str, Dict[str, Any]]]:
        if self.inbounds_override:
            proxy_types = override_proxy_types(self.inbounds_override)
            inbounds_map = {k: list(v) for k, v in self.inbounds_override.items()}
        else:
            inbounds = self.load_instance_inbounds()
            proxy_types = select_proxy_types(identity, inbounds, self.known_proxy_types)
            inbounds_map = build_inbounds_map(inbounds, proxy_types)
        return inbounds_map, build_proxies_map(proxy_types)

    def _entitlement(self, identity: WebIdentity) -> Dict[str, Any]:
        return {
            # 0 is unlimited for Marzban
            "data_limit": traffic_limit_bytes(identity, self.default_traffic_limit_gb) or 0,
            "data_limit_reset_strategy": reset_strategy(identity),
            "expire": expiry_seconds(identity),
        }

    def create_new_panel_user(self, identity: WebIdentity) -> PanelUser:
        username, existing = self._resolve(identity)
        if existing is not None:
            log.info("identity %s already owns %s; not creating", identity.id, username)
            return existing

        inbounds_map, proxies = self._negotiate(identity)
        payload = {
            "username": username,
            "note": build_note(identity),
            **self._entitlement(identity),
            "inbounds": inbounds_map,
            "proxies": proxies,
        }
        try:
            obj = create_user(self.panel_url, self.token, payload)
        except PanelUserCreateFailed as e:
            log.error(
                "Marzban create failed for %s: status=%s messages=%s inbounds=%s proxies=%s",
                username, e.status_code, e.messages, inbounds_map, proxies,
            )
            raise
        log.info("created Marzban user %s for identity %s", username, identity.id)
        return to_panel_user(obj, self.instance_url)

    def get_or_create_panel_user(self, identity: WebIdentity) -> PanelUser:
        try:
            return self.get_panel_user(identity)
        except PanelUserNotFound:
            return self.create_new_panel_user(identity)

    def update_panel_user(self, identity: WebIdentity) -> None:
        user = self.get_panel_user(identity)
        desired = self._entitlement(identity)
        current = {
            "data_limit": user.data_limit or 0,
            "data_limit_reset_strategy": user.raw.get("data_limit_reset_strategy"),
            "expire": user.expire or 0,
        }
        if current == desired:
            log.debug("Marzban user %s already up to date", user.username)
            return
        modify_user(self.panel_url, self.token, user.username, desired)
        log.info("updated Marzban user %s: %s", user.username, desired)

    def delete_panel_user(self, identity: WebIdentity) -> None:
        try:
            user = self.get_panel_user(identity)
        except PanelUserNotFound:
            return
        if remove_user(self.panel_url, self.token, user.username):
            log.info("removed Marzban user %s", user.username)

    def load_instance_inbounds(self) -> List[Inbound]:
        inbounds: List[Inbound] = []
        for ptype, items in get_inbounds(self.panel_url, self.token).items():
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                inbounds.append(Inbound(type=ptype, tag=item.get("tag"), port=_to_int(item.get("port"))))
        return inbounds
