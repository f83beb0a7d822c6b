#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Remnawave panel adapter.

This module mirrors the interface of :mod:`marzban` but targets the
Remnawave API.  Remnawave has no per-protocol inbound selection: new users
join every internal squad.  The username is derived straight from the
identity id, so a single lookup is enough and no suffix probing happens.
What callers get back from :meth:`RemnawaveAPI.get_or_create_panel_user`
is the subscription view, not the raw user record.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urljoin

import requests
SESSION = requests.Session()

from apis.entitlement import (
    expiry_seconds,
    parse_date,
    reset_strategy,
    traffic_limit_bytes,
)
from apis.errors import PanelUnreachable, PanelUserCreateFailed, PanelUserNotFound
from apis.models import EXPIRE_NEVER_TS, Inbound, PanelUser, WebIdentity
from apis.usernames import MAX_USERNAME_LENGTH

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "20"))

DESCRIPTION_PREFIX = "User by oauth-vpn-portal, oauth details: "

# command -> (HTTP method, URL builder)
COMMANDS: Dict[str, Tuple[str, Callable[..., str]]] = {
    "create_user": ("POST", lambda: "api/users"),
    "get_user_by_username": ("GET", lambda username: f"api/users/by-username/{quote(username, safe='')}"),
    "update_user": ("PATCH", lambda: "api/users"),
    "delete_user": ("DELETE", lambda uuid: f"api/users/{quote(uuid, safe='')}"),
    "get_all_inbounds": ("GET", lambda: "api/config-profiles/inbounds"),
    "get_internal_squads": ("GET", lambda: "api/internal-squads"),
    "get_subscription_info": ("GET", lambda short_uuid: f"api/sub/{quote(short_uuid, safe='')}/info"),
}

# Remnawave has no yearly reset
TRAFFIC_LIMIT_STRATEGIES = {
    "no_reset": "NO_RESET",
    "day": "DAY",
    "week": "WEEK",
    "month": "MONTH",
}


def get_headers(api_key: str) -> Dict[str, str]:
    """Return authorization header for the given API key."""
    return {"Authorization": f"Bearer {api_key}"}


def send(panel_url: str, api_key: str, command: str, *url_args: str, payload: Optional[Dict] = None) -> requests.Response:
    """Issue *command* and return the raw response."""
    method, build_url = COMMANDS[command]
    path = build_url(*url_args)
    try:
        return SESSION.request(
            method,
            urljoin(panel_url.rstrip('/') + '/', path),
            json=payload,
            headers=get_headers(api_key),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        raise PanelUnreachable(f"{command} failed: {str(e)[:200]}") from e


def unwrap(r: requests.Response, command: str) -> Any:
    """Return the ``response`` member of a successful reply."""
    if not 200 <= r.status_code < 300:
        hint = ", check REMNAWAVE_API_KEY and PANEL_API_URL" if r.status_code in (401, 403, 404) else ""
        raise PanelUnreachable(f"{command}: {r.status_code} {r.text[:200]}{hint}", status_code=r.status_code)
    try:
        body = r.json()
    except ValueError as e:
        raise PanelUnreachable(f"{command} returned non-JSON body", status_code=r.status_code) from e
    if not isinstance(body, dict) or "response" not in body:
        raise PanelUnreachable(f"{command}: unexpected payload", status_code=r.status_code)
    return body["response"]


def call(panel_url: str, api_key: str, command: str, *url_args: str, payload: Optional[Dict] = None) -> Any:
    return unwrap(send(panel_url, api_key, command, *url_args, payload=payload), command)


def create_user(panel_url: str, api_key: str, payload: Dict) -> Dict:
    """Create a user on the remote panel."""
    r = send(panel_url, api_key, "create_user", payload=payload)
    if 400 <= r.status_code < 500:
        try:
            body = r.json()
        except ValueError:
            body = {"message": r.text[:300]}
        if not isinstance(body, dict):
            body = {"message": str(body)}
        message = body.get("message")
        errors = [str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in body.get("errors") or []]
        raise PanelUserCreateFailed(
            f"Failed to create user: {message}. Errors: {', '.join(errors)}",
            status_code=r.status_code,
            messages=[m for m in [message, *errors] if m],
            payload=body,
        )
    return unwrap(r, "create_user")


def get_user_by_username(panel_url: str, api_key: str, username: str) -> Optional[Dict]:
    """Fetch a user record; ``None`` on 404."""
    r = send(panel_url, api_key, "get_user_by_username", username)
    if r.status_code == 404:
        return None
    return unwrap(r, "get_user_by_username")


def load_internal_squads(panel_url: str, api_key: str) -> List[Dict]:
    data = call(panel_url, api_key, "get_internal_squads")
    return list((data or {}).get("internalSquads") or [])


def format_username(identity_id: str, prefix: str = "") -> str:
    return (prefix + identity_id)[:MAX_USERNAME_LENGTH]


def to_iso(ts: int) -> str:
    try:
        moment = datetime.fromtimestamp(ts, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        log.warning("expiry %r is not a representable date; using never", ts)
        moment = datetime.fromtimestamp(EXPIRE_NEVER_TS, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_epoch(value: Any) -> Optional[int]:
    if not isinstance(value, str) or not value:
        return None
    parsed = parse_date(value)
    return int(parsed.timestamp()) if parsed else None


def _used_bytes(user: Dict) -> Optional[int]:
    traffic = user.get("userTraffic")
    if isinstance(traffic, dict) and "usedTrafficBytes" in traffic:
        return _to_int(traffic.get("usedTrafficBytes"))
    return _to_int(user.get("usedTrafficBytes"))


def to_panel_user(user: Dict) -> PanelUser:
    """Normalise a Remnawave user record."""
    return PanelUser(
        username=user.get("username") or "",
        used_traffic=_used_bytes(user),
        data_limit=_to_int(user.get("trafficLimitBytes")) or None,
        expire=_to_epoch(user.get("expireAt")),
        note=user.get("description"),
        status=user.get("status"),
        subscription_url=user.get("subscriptionUrl") or None,
        uuid=user.get("uuid"),
        short_uuid=user.get("shortUuid"),
        raw=user,
    )


def to_subscription_view(info: Dict, user: Optional[Dict] = None) -> PanelUser:
    """Normalise a subscription-info response.

    The info endpoint reports traffic as display strings; byte counts are
    taken from the user record when one is at hand.
    """
    sub_user = info.get("user") or {}
    record = user or {}
    links = info.get("links") if isinstance(info.get("links"), list) else []
    return PanelUser(
        username=sub_user.get("username") or record.get("username") or "",
        used_traffic=_used_bytes(record) if record else None,
        data_limit=_to_int(record.get("trafficLimitBytes")) or None,
        expire=_to_epoch(sub_user.get("expiresAt") or record.get("expireAt")),
        note=record.get("description"),
        status=sub_user.get("userStatus") or record.get("status"),
        subscription_url=info.get("subscriptionUrl") or record.get("subscriptionUrl") or None,
        links=[str(x) for x in links],
        uuid=record.get("uuid"),
        short_uuid=sub_user.get("shortUuid") or record.get("shortUuid"),
        raw=info,
    )


class RemnawaveAPI:
    panel_type = "remnawave"

    def __init__(self, config):
        self.panel_url = config.panel_api_url
        self.api_key = config.remnawave_api_key
        self.default_traffic_limit_gb = config.traffic_limit_gb
        self.username_prefix = config.user_id_prefix

    def _username(self, identity: WebIdentity) -> str:
        return format_username(identity.id, self.username_prefix)

    def _entitlement(self, identity: WebIdentity) -> Dict[str, Any]:
        strategy = reset_strategy(identity)
        if strategy not in TRAFFIC_LIMIT_STRATEGIES:
            log.warning("Remnawave has no %r reset strategy; using MONTH", strategy)
        return {
            # 0 is unlimited for Remnawave
            "trafficLimitBytes": traffic_limit_bytes(identity, self.default_traffic_limit_gb) or 0,
            "trafficLimitStrategy": TRAFFIC_LIMIT_STRATEGIES.get(strategy, "MONTH"),
            "expireAt": to_iso(expiry_seconds(identity)),
        }

    def _get_user_record(self, identity: WebIdentity) -> Dict:
        username = self._username(identity)
        user = get_user_by_username(self.panel_url, self.api_key, username)
        if user is None:
            raise PanelUserNotFound(f"no Remnawave user {username}", status_code=404)
        return user

    def get_panel_user(self, identity: WebIdentity) -> PanelUser:
        return to_panel_user(self._get_user_record(identity))

    def _create_user_record(self, identity: WebIdentity) -> Dict:
        squads = load_internal_squads(self.panel_url, self.api_key)
        username = self._username(identity)
        payload = {
            "username": username,
            "status": "ACTIVE",
            "description": DESCRIPTION_PREFIX + json.dumps(identity.as_dict(), ensure_ascii=False),
            **self._entitlement(identity),
            "activeInternalSquads": [s["uuid"] for s in squads if s.get("uuid")],
        }
        if identity.email:
            payload["email"] = identity.email
        try:
            user = create_user(self.panel_url, self.api_key, payload)
        except PanelUserCreateFailed as e:
            log.error("Remnawave create failed for %s: status=%s body=%s", username, e.status_code, e.payload)
            raise
        log.info("created Remnawave user %s with %d squads", username, len(payload["activeInternalSquads"]))
        return user

    def create_new_panel_user(self, identity: WebIdentity) -> PanelUser:
        return to_panel_user(self._create_user_record(identity))

    def get_subscription(self, user: Dict) -> PanelUser:
        info = call(self.panel_url, self.api_key, "get_subscription_info", user.get("shortUuid") or "")
        return to_subscription_view(info or {}, user)

    def get_or_create_panel_user(self, identity: WebIdentity) -> PanelUser:
        try:
            user = self._get_user_record(identity)
        except PanelUserNotFound:
            user = self._create_user_record(identity)
        return self.get_subscription(user)

    def update_panel_user(self, identity: WebIdentity) -> None:
        user = self._get_user_record(identity)
        payload = {"uuid": user["uuid"], **self._entitlement(identity)}
        call(self.panel_url, self.api_key, "update_user", payload=payload)
        log.info("updated Remnawave user %s", user.get("username"))

    def delete_panel_user(self, identity: WebIdentity) -> None:
        try:
            user = self._get_user_record(identity)
        except PanelUserNotFound:
            return
        call(self.panel_url, self.api_key, "delete_user", user["uuid"])
        log.info("removed Remnawave user %s", user.get("username"))

    def load_instance_inbounds(self) -> List[Inbound]:
        data = call(self.panel_url, self.api_key, "get_all_inbounds")
        items = (data or {}).get("inbounds") if isinstance(data, dict) else data
        return [
            Inbound(
                type=(item.get("type") or None),
                tag=item.get("tag"),
                port=_to_int(item.get("port")),
                uuid=item.get("uuid"),
            )
            for item in items or []
            if isinstance(item, dict)
        ]
