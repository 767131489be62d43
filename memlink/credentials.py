"""Credential collaborators.

The connection layer only needs an auth header; storage and encryption of
secrets live elsewhere. Anything with a ``get_auth_header()`` method works.
"""

import os
from typing import Protocol

from memlink.log_config import get_logger
from memlink.mcp.models import AuthDescriptor

log = get_logger("credentials")


class CredentialStore(Protocol):
    """Supplies the auth header injected into every transport."""

    def get_auth_header(self) -> AuthDescriptor | None: ...


class StaticCredentialStore:
    """Fixed credential, mostly for tests and scripted use."""

    def __init__(self, auth: AuthDescriptor | None = None):
        self._auth = auth

    def get_auth_header(self) -> AuthDescriptor | None:
        return self._auth


class EnvCredentialStore:
    """Reads MEMLINK_TOKEN (bearer) or MEMLINK_API_KEY (apikey).

    A bearer token wins when both are set.
    """

    def get_auth_header(self) -> AuthDescriptor | None:
        token = os.environ.get("MEMLINK_TOKEN")
        if token:
            return AuthDescriptor(type="bearer", value=token)
        api_key = os.environ.get("MEMLINK_API_KEY")
        if api_key:
            return AuthDescriptor(type="apikey", value=api_key)
        log.debug("No credentials in environment")
        return None
