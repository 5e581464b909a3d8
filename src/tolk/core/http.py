"""Shared httpx client factory with working SSL on macOS.

uv-managed Python on macOS fails SSL verification with httpx's default
context.  Passing an explicit ``ssl.create_default_context()`` fixes it
because that path correctly loads the system certificate store.
"""

from __future__ import annotations

import ssl
from collections.abc import Callable
from typing import Any

import httpx

DEFAULT_USER_AGENT = "OpenTolk/0.1 (+https://github.com/opentolk)"


def make_httpx_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` with SSL verification that works on macOS.

    Accepts the same keyword arguments as ``httpx.AsyncClient``.
    If ``verify`` is not given and no custom ``transport`` is supplied, the
    system SSL context is used.
    """
    if "transport" not in kwargs:
        kwargs.setdefault("verify", ssl.create_default_context())
    headers = dict(kwargs.pop("headers", None) or {})
    headers.setdefault("User-Agent", DEFAULT_USER_AGENT)
    kwargs["headers"] = headers
    kwargs.setdefault("follow_redirects", True)
    return httpx.AsyncClient(**kwargs)


HttpClientFactory = Callable[..., httpx.AsyncClient]
