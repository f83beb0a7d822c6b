import re
from urllib.parse import unquote, urlparse

import pytest
import requests

from apis import marzban, remnawave
from config import PanelConfig

MARZBAN_URL = "https://marzban.example.com"
REMNAWAVE_URL = "https://remnawave.example.com"


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else ("" if json_data is None else str(json_data))

    def json(self):
        if self._json is None:
            raise requests.exceptions.JSONDecodeError("Expecting value", self.text, 0)
        return self._json


class FakeMarzbanPanel:
    """In-memory stand-in for the Marzban REST API."""

    def __init__(self):
        self.users = {}
        self.inbounds = {
            "vless": [{"tag": "VLESS TCP REALITY", "protocol": "vless", "port": 443}],
            "vmess": [{"tag": "VMess TCP", "protocol": "vmess", "port": "8080"}],
        }
        self.calls = []
        self.fail_with = None
        self.create_error = None

    def add_user(self, username, note=None, **extra):
        self.users[username] = {
            "username": username,
            "note": note,
            "used_traffic": 0,
            "data_limit": 0,
            "data_limit_reset_strategy": "month",
            "expire": None,
            "status": "active",
            "subscription_url": f"/sub/{username}-token",
            "links": [],
            **extra,
        }
        return self.users[username]

    def calls_to(self, method, path_prefix=""):
        return [c for c in self.calls if c[0] == method and c[1].startswith(path_prefix)]

    def request(self, method, url, **kwargs):
        path = urlparse(url).path.lstrip("/")
        self.calls.append((method, path, kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        if path == "api/admin/token":
            return FakeResponse(200, {"access_token": "tok", "token_type": "bearer"})
        if path == "api/inbounds":
            return FakeResponse(200, self.inbounds)
        if path == "api/user" and method == "POST":
            if self.create_error is not None:
                return self.create_error
            body = kwargs["json"]
            if body["username"] in self.users:
                return FakeResponse(409, {"detail": "User already exists"})
            user = self.add_user(
                body["username"],
                note=body.get("note"),
                data_limit=body.get("data_limit"),
                data_limit_reset_strategy=body.get("data_limit_reset_strategy"),
                expire=body.get("expire"),
            )
            return FakeResponse(200, dict(user))
        m = re.fullmatch(r"api/user/([^/]+)", path)
        if m:
            username = unquote(m.group(1))
            user = self.users.get(username)
            if user is None:
                return FakeResponse(404, {"detail": "User not found"})
            if method == "GET":
                return FakeResponse(200, dict(user))
            if method == "PUT":
                user.update(kwargs["json"])
                return FakeResponse(200, dict(user))
            if method == "DELETE":
                del self.users[username]
                return FakeResponse(200, {"detail": "User successfully deleted"})
        return FakeResponse(500, text="unexpected request")


class FakeRemnawavePanel:
    """In-memory stand-in for the Remnawave API."""

    def __init__(self):
        self.users = {}
        self.squads = [
            {"uuid": "sq-1", "name": "Default"},
            {"uuid": "sq-2", "name": "Premium"},
        ]
        self.inbounds = [
            {"uuid": "ib-1", "tag": "VLESS_REALITY", "type": "vless", "port": 443},
            {"uuid": "ib-2", "tag": "TROJAN", "type": "trojan", "port": None},
        ]
        self.calls = []
        self.create_error = None
        self._seq = 0

    def add_user(self, username, **extra):
        self._seq += 1
        user = {
            "uuid": f"uuid-{self._seq}",
            "shortUuid": f"short-{self._seq}",
            "username": username,
            "status": "ACTIVE",
            "trafficLimitBytes": 0,
            "trafficLimitStrategy": "MONTH",
            "expireAt": "2099-05-09T00:00:00.000Z",
            "description": None,
            "userTraffic": {"usedTrafficBytes": 1024},
            "subscriptionUrl": f"https://sub.example.com/{self._seq}",
            **extra,
        }
        self.users[username] = user
        return user

    def calls_to(self, method, path_prefix=""):
        return [c for c in self.calls if c[0] == method and c[1].startswith(path_prefix)]

    def _by_uuid(self, uuid):
        for user in self.users.values():
            if user["uuid"] == uuid:
                return user
        return None

    def request(self, method, url, **kwargs):
        path = urlparse(url).path.lstrip("/")
        self.calls.append((method, path, kwargs))
        body = kwargs.get("json")
        if path == "api/internal-squads":
            return FakeResponse(200, {"response": {"total": len(self.squads), "internalSquads": self.squads}})
        if path == "api/config-profiles/inbounds":
            return FakeResponse(200, {"response": {"total": len(self.inbounds), "inbounds": self.inbounds}})
        if path == "api/users" and method == "POST":
            if self.create_error is not None:
                return self.create_error
            extra = {k: v for k, v in body.items() if k != "username"}
            return FakeResponse(201, {"response": dict(self.add_user(body["username"], **extra))})
        if path == "api/users" and method == "PATCH":
            user = self._by_uuid(body["uuid"])
            if user is None:
                return FakeResponse(404, {"message": "User not found"})
            user.update({k: v for k, v in body.items() if k != "uuid"})
            return FakeResponse(200, {"response": dict(user)})
        m = re.fullmatch(r"api/users/by-username/([^/]+)", path)
        if m:
            user = self.users.get(unquote(m.group(1)))
            if user is None:
                return FakeResponse(404, {"message": "User not found", "errorCode": "A062"})
            return FakeResponse(200, {"response": dict(user)})
        m = re.fullmatch(r"api/users/([^/]+)", path)
        if m and method == "DELETE":
            user = self._by_uuid(unquote(m.group(1)))
            if user is None:
                return FakeResponse(404, {"message": "User not found"})
            del self.users[user["username"]]
            return FakeResponse(200, {"response": {"isDeleted": True}})
        m = re.fullmatch(r"api/sub/([^/]+)/info", path)
        if m:
            for user in self.users.values():
                if user["shortUuid"] == m.group(1):
                    return FakeResponse(200, {"response": {
                        "isFound": True,
                        "user": {
                            "shortUuid": user["shortUuid"],
                            "username": user["username"],
                            "expiresAt": user["expireAt"],
                            "userStatus": user["status"],
                            "trafficUsed": "1 KiB",
                            "trafficLimit": "0",
                        },
                        "links": ["vless://abc@host:443#main"],
                        "subscriptionUrl": user["subscriptionUrl"],
                    }})
            return FakeResponse(404, {"message": "Subscription not found"})
        return FakeResponse(500, text="unexpected request")


def make_config(**overrides):
    values = dict(
        panel_type="marzban",
        panel_api_url=MARZBAN_URL,
        traffic_limit_gb=0,
        user_id_prefix="",
        remnawave_api_key="",
        marzban_username="admin",
        marzban_password="secret",
        marzban_user_inbounds=None,
        marzban_instance_url="",
    )
    values.update(overrides)
    return PanelConfig(**values)


@pytest.fixture
def marzban_panel(monkeypatch):
    panel = FakeMarzbanPanel()
    monkeypatch.setattr(marzban, "SESSION", panel)
    marzban._token_cache.clear()
    yield panel
    marzban._token_cache.clear()


@pytest.fixture
def remnawave_panel(monkeypatch):
    panel = FakeRemnawavePanel()
    monkeypatch.setattr(remnawave, "SESSION", panel)
    return panel


@pytest.fixture
def marzban_config():
    return make_config()


@pytest.fixture
def remnawave_config():
    return make_config(
        panel_type="remnawave",
        panel_api_url=REMNAWAVE_URL,
        remnawave_api_key="rw-key",
        marzban_username="",
        marzban_password="",
    )


@pytest.fixture
def config_factory():
    return make_config
