"""Shared HTTP boundary helpers: metrics access, body limits and cookie options."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import Request, Response

from .errors import AuthError, ForbiddenError, PayloadTooLargeError, ValidationError
from .settings import ControlPlaneSettings


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow metrics scrapes with the bearer token, or from loopback when no token is set."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, expected):
            raise AuthError("Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not client_host:
        raise ForbiddenError("Metrics access denied")
    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        raise ForbiddenError("Metrics access denied") from exc
    if not loopback:
        raise ForbiddenError("Metrics access restricted to localhost")


def body_limit_for_path(path: str, settings: ControlPlaneSettings) -> int:
    for prefix in settings.auth_path_prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return settings.auth_body_limit_bytes
    return settings.api_body_limit_bytes


def enforce_body_limit(request: Request, settings: ControlPlaneSettings) -> None:
    """Reject requests whose declared Content-Length exceeds the path's limit."""
    raw = request.headers.get("content-length")
    if raw is None:
        return
    try:
        length = int(raw)
    except ValueError as exc:
        raise ValidationError("Invalid Content-Length header") from exc
    limit = body_limit_for_path(request.url.path, settings)
    if length > limit:
        raise PayloadTooLargeError(f"Request entity too large (limit {limit} bytes)")


def cookie_options(settings: ControlPlaneSettings) -> dict:
    """Attributes shared by every session cookie, on both set and clear."""
    return {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "strict",
        "path": "/",
    }


def set_cookies(response: Response, values: dict[str, str], settings: ControlPlaneSettings, max_age: int) -> None:
    options = cookie_options(settings)
    for name, value in values.items():
        response.set_cookie(name, value, max_age=max_age, **options)


def clear_cookies(response: Response, names, settings: ControlPlaneSettings) -> None:
    options = cookie_options(settings)
    for name in names:
        response.delete_cookie(name, **options)


API_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=(), usb=()",
}


def apply_security_headers(response: Response) -> Response:
    """Stamp the API security headers onto ``response``, replacing existing values."""
    for name, value in API_SECURITY_HEADERS.items():
        response.headers[name] = value
    return response
