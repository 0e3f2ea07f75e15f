"""
Credential authority interface.

The authority issues, validates, refreshes and revokes credentials. It is an
external service; managers only talk to it through this protocol. Failures
are raised as exceptions.
"""

from typing import Optional, Protocol

from credentials.tokens import CredentialToken, Session


class CredentialAuthority(Protocol):

    async def authenticate(self, credentials: dict) -> Session:
        ...

    async def refresh(self) -> CredentialToken:
        """Exchange the current refresh secret for a new credential."""
        ...

    async def revoke(self) -> None:
        ...

    async def get_current_session(self) -> Optional[Session]:
        ...
