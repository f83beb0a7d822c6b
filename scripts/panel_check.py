#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Check the configured panel: credentials work and inbounds are visible.

Run from the project root:  python -m scripts.panel_check
Exit status is 0 on success, 1 on any configuration or panel error.
"""

import logging
import sys

from dotenv import load_dotenv

from apis import remnawave
from apis.errors import PanelAPIError
from apis.reconcile import get_api
from config import load_panel_config

logging.basicConfig(
    format="%(asctime)s | %(levelname)s | panel_check | %(message)s",
    level=logging.INFO,
)
log = logging.getLogger("panel_check")


def check() -> int:
    try:
        api = get_api(load_panel_config())
    except (PanelAPIError, ValueError) as e:
        log.error("configuration error: %s", e)
        return 1

    try:
        inbounds = api.load_instance_inbounds()
        log.info("%s at %s: %d inbounds", api.panel_type, api.panel_url, len(inbounds))
        for ib in inbounds:
            log.info("  %-12s %-30s port=%s", ib.type or "?", ib.tag or "?", ib.port or "-")
        if api.panel_type == "remnawave":
            squads = remnawave.load_internal_squads(api.panel_url, api.api_key)
            log.info("%d internal squads (new users join all of them)", len(squads))
            for sq in squads:
                log.info("  %s %s", sq.get("uuid"), sq.get("name"))
    except PanelAPIError as e:
        log.error("panel check failed: %s", e)
        return 1
    return 0


def main():
    load_dotenv()
    sys.exit(check())

if __name__ == "__main__":
    main()
