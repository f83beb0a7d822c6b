#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Flask portal that hands out VPN subscriptions after an OAuth login
- GET /vpn
- The OAuth login layer at LOGIN_URL stores the user (see
  apis.claims.map_profile_to_user) in the session; anonymous visitors are
  redirected there.
- Each request finds, creates or updates the user's account on the configured
  panel (Marzban or Remnawave) and renders its subscription.
- Browsers (Accept: text/html) get a page; anything else gets the subscription
  links as text/plain, one per line.
"""

import os
import logging
import secrets
from datetime import datetime, timezone

from flask import Flask, Response, redirect, request, render_template_string, session
from dotenv import load_dotenv

from apis.errors import PanelAPIError, PanelNotConfigured
from apis.models import EXPIRE_NEVER_TS, WebIdentity
from apis.reconcile import get_api, reconcile_panel_user
from config import load_config, load_panel_config

logging.basicConfig(
    format="%(asctime)s | %(levelname)s | vpn_portal | %(message)s",
    level=logging.INFO,
)
log = logging.getLogger("vpn_portal")

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")

with open(os.path.join(TEMPLATES_DIR, "vpn.html"), encoding="utf-8") as f:
    HTML_TEMPLATE = f.read()
with open(os.path.join(TEMPLATES_DIR, "message.html"), encoding="utf-8") as f:
    MESSAGE_TEMPLATE = f.read()

load_dotenv()
CONFIG = load_config()

# ---------- app ----------
app = Flask(__name__)
app.secret_key = CONFIG.secret_key or secrets.token_hex(32)
if not CONFIG.secret_key:
    log.warning("SECRET_KEY is not set; sessions will not survive a restart")


def bytesformat(num):
    try:
        num = float(num)
    except (TypeError, ValueError):
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    for u in units:
        if abs(num) < 1024.0:
            return f"{num:.2f} {u}"
        num /= 1024.0
    return f"{num:.2f} PB"


def expireformat(ts):
    if not ts or ts >= EXPIRE_NEVER_TS:
        return "No expiry"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


app.jinja_env.filters["bytesformat"] = bytesformat
app.jinja_env.filters["expireformat"] = expireformat


def wants_html() -> bool:
    return "text/html" in request.headers.get("Accept", "")


def message_response(title, text, status):
    if wants_html():
        body = render_template_string(
            MESSAGE_TEMPLATE, page_title=CONFIG.page_title, title=title, text=text
        )
        return Response(body, status=status, mimetype="text/html")
    return Response(f"{title}\n{text}\n", status=status, mimetype="text/plain")


def current_identity():
    raw = session.get("user")
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    return WebIdentity.from_dict(raw)


@app.errorhandler(PanelNotConfigured)
def not_configured(e):
    log.warning("panel not configured: %s", e)
    name = (e.panel_type or "VPN panel").capitalize()
    if "PANEL_TYPE" in e.missing:
        return message_response(
            "VPN panel is not configured", "Set PANEL_TYPE to remnawave or marzban.", 503
        )
    return message_response(
        f"{name} is not configured",
        f"Please specify {', '.join(e.missing)} in .env",
        503,
    )


@app.errorhandler(PanelAPIError)
def panel_error(e):
    log.exception("panel request failed: %s", e)
    return message_response(
        "Something went wrong",
        "We could not reach the VPN panel. Please try again later.",
        502,
    )


@app.route("/", methods=["GET"])
def index():
    return redirect("/vpn")


@app.route("/vpn", methods=["GET"])
def vpn():
    identity = current_identity()
    if identity is None:
        if not CONFIG.login_url:
            log.warning("anonymous request to /vpn but LOGIN_URL is not set")
            return message_response("Login is not configured", "Set LOGIN_URL in .env", 503)
        return redirect(CONFIG.login_url)

    try:
        panel_config = load_panel_config()
    except ValueError as e:
        log.warning("invalid panel configuration: %s", e)
        return message_response("VPN panel is not configured", str(e), 503)

    api = get_api(panel_config)
    user = reconcile_panel_user(api, identity)

    if wants_html():
        return render_template_string(
            HTML_TEMPLATE,
            page_title=CONFIG.page_title,
            identity=identity,
            user=user,
            links=user.subscription_links(),
        )
    links = user.subscription_links()
    body = "\n".join(links) + "\n" if links else ""
    resp = Response(body, mimetype="text/plain")
    resp.headers["X-Data-Limit-Bytes"] = str(user.data_limit) if user.data_limit else "unlimited"
    resp.headers["X-Used-Bytes"] = str(user.used_traffic if user.used_traffic is not None else "unknown")
    resp.headers["X-Expire"] = "never" if user.never_expires else str(user.expire)
    return resp


def main():
    host = os.getenv("FLASK_HOST", "0.0.0.0")
    port = int(os.getenv("FLASK_PORT", "5000"))
    cert = os.getenv("SSL_CERT_PATH")
    key = os.getenv("SSL_KEY_PATH")
    ssl_context = (cert, key) if cert and key else None
    app.run(host=host, port=port, debug=False, ssl_context=ssl_context)

if __name__ == "__main__":
    main()
