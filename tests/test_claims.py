from apis.claims import extract_entitlement, get_claim, map_profile_to_user, to_number, to_string_array
from apis.models import UNSET, VpnConfig, WebIdentity


def test_top_level_claim_wins_over_nested():
    profile = {"DEFAULT_PROXY": "vless", "vpn": {"DEFAULT_PROXY": "vmess", "PANEL_USER_PROXIES": ["trojan"]}}
    assert get_claim(profile, "DEFAULT_PROXY") == "vless"
    assert get_claim(profile, "PANEL_USER_PROXIES") == ["trojan"]
    assert get_claim(profile, "missing") is UNSET


def test_explicit_null_claim_is_kept():
    assert get_claim({"vpn": {"PANEL_USER_EXPIRY_DATE": None}}, "PANEL_USER_EXPIRY_DATE") is None


def test_nested_vpn_must_be_a_mapping():
    assert get_claim({"vpn": "yes"}, "DEFAULT_PROXY") is UNSET


def test_to_number():
    assert to_number(5) == 5
    assert to_number("10") == 10
    assert to_number(" 2.5 ") == 2.5
    assert to_number("ten") is UNSET
    assert to_number("") is UNSET
    assert to_number(True) is UNSET
    assert to_number(None) is UNSET
    assert to_number("inf") is UNSET


def test_to_string_array():
    assert to_string_array(["vless", 3, "vmess"]) == ["vless", "vmess"]
    assert to_string_array("trojan") == ["trojan"]
    assert to_string_array(7) is UNSET


def test_no_claims_means_no_entitlement():
    assert extract_entitlement({"email": "a@b.com"}) is None


def test_extract_entitlement_from_mixed_shapes():
    profile = {
        "PANEL_USER_TRAFFIC_LIMIT_GB": "50",
        "vpn": {
            "DATA_LIMIT_RESET_STRATEGY": "Week",
            "PANEL_USER_EXPIRY_DATE": None,
            "PANEL_USER_PROXIES": "VLESS",
        },
    }
    cfg = extract_entitlement(profile)
    assert cfg.traffic_limit_gb == 50
    assert cfg.data_limit_reset_strategy == "Week"
    assert cfg.expiry_date is None
    assert cfg.proxies == ["VLESS"]
    assert cfg.default_proxy is UNSET
    assert cfg.as_dict() == {
        "traffic_limit_gb": 50,
        "data_limit_reset_strategy": "Week",
        "expiry_date": None,
        "proxies": ["VLESS"],
    }


def test_invalid_traffic_claim_is_dropped():
    cfg = extract_entitlement({"PANEL_USER_TRAFFIC_LIMIT_GB": "lots", "DEFAULT_PROXY": "vmess"})
    assert cfg.traffic_limit_gb is UNSET
    assert cfg.default_proxy == "vmess"


def test_map_profile_to_user():
    profile = {
        "sub": "ignored",
        "email": "alice@example.com",
        "name": "Alice",
        "picture": "https://img.example.com/a.png",
        "preferred_username": "alice",
        "vpn": {"vpn_username": "alice-vpn", "PANEL_USER_TRAFFIC_LIMIT_GB": 10},
    }
    identity = map_profile_to_user(profile, user_id=42)
    assert identity.id == "42"
    assert identity.email == "alice@example.com"
    assert identity.image == "https://img.example.com/a.png"
    assert identity.vpn_username == "alice-vpn"
    assert identity.preferred_username == "alice"
    assert identity.vpn_config == VpnConfig(traffic_limit_gb=10)


def test_identity_survives_session_round_trip():
    identity = map_profile_to_user(
        {"email": "a@b.com", "PANEL_USER_EXPIRY_DATE": None, "PANEL_USER_PROXIES": ["vless"]}, "u1"
    )
    restored = WebIdentity.from_dict(identity.as_dict())
    assert restored == identity
    assert restored.vpn_config.expiry_date is None
