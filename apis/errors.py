#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Exceptions raised by the panel adapters."""

from __future__ import annotations

from typing import Any, Iterable, List, Optional


class PanelAPIError(Exception):
    """Base class for panel API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PanelUserNotFound(PanelAPIError):
    """The panel has no account owned by the identity."""


class UsernameSpaceExhausted(PanelAPIError):
    """Every probed username candidate belongs to someone else."""


class PanelUnreachable(PanelAPIError):
    """Transport failure, server error or an unexpected panel response."""


class PanelUserCreateFailed(PanelAPIError):
    """The panel rejected a create request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        messages: Optional[Iterable[str]] = None,
        payload: Any = None,
    ):
        super().__init__(message, status_code=status_code)
        self.messages: List[str] = list(messages or [])
        self.payload = payload


class PanelNotConfigured(PanelAPIError):
    """Required panel settings are missing."""

    def __init__(self, panel_type: str, missing: Iterable[str]):
        self.panel_type = panel_type
        self.missing = list(missing)
        super().__init__(
            f"{panel_type or 'panel'} is not configured: set {', '.join(self.missing)}"
        )
