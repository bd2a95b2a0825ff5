"""Shared-secret checks for the webhook and operator endpoints."""

from __future__ import annotations

import secrets


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def verify_shared_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison of a provided secret against the configured one.

    An empty expected secret never matches, so an unconfigured deployment
    rejects every delivery instead of accepting all of them.
    """
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
