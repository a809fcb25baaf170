"""Shared route dependencies."""
from __future__ import annotations

import os
from typing import Any, Optional

from fastapi import Cookie

from ... import app_context

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def get_current_user(session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME)) -> Any:
    return app_context.get_current_user(session_token=session_token)


def get_optional_current_user(session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME)) -> Optional[Any]:
    return app_context.get_optional_current_user(session_token=session_token)
