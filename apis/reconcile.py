#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Pick the panel adapter and run one reconciliation.

Both adapters expose the same methods, so callers only deal with
:func:`get_api` and :func:`reconcile_panel_user`.
"""

from __future__ import annotations

import logging

from apis.errors import PanelNotConfigured
from apis.marzban import MarzbanAPI
from apis.models import PanelUser, WebIdentity
from apis.remnawave import RemnawaveAPI

log = logging.getLogger(__name__)

API_CLASSES = {
    "marzban": MarzbanAPI,
    "remnawave": RemnawaveAPI,
}


def get_api(config):
    """Return the adapter for ``config.panel_type``.

    Raises :class:`PanelNotConfigured` when the panel type is unknown or its
    credentials are missing.
    """
    missing = config.missing_settings()
    if missing:
        raise PanelNotConfigured(config.panel_type, missing)
    return API_CLASSES[config.panel_type](config)


def reconcile_panel_user(api, identity: WebIdentity) -> PanelUser:
    """Make sure *identity* has an up-to-date panel account and return it.

    Lookup, then create when missing, then push the current entitlement.
    Nothing is retried; two concurrent calls for a new identity may both
    try to create and the panel decides which one wins.
    """
    log.debug("reconciling %s on %s", identity.id, api.panel_type)
    user = api.get_or_create_panel_user(identity)
    api.update_panel_user(identity)
    log.debug("reconciled %s as %s", identity.id, user.username)
    return user
