"""MCP tools for storing the portal login each booking runs under."""

import logging

from fastmcp import FastMCP

from courtbook.server import get_credential_store

logger = logging.getLogger(__name__)


async def _verify_login(username: str, password: str) -> None:
    """Log in once with a throwaway session. Raises on rejection."""
    from courtbook.clients.portal import PortalSession
    from courtbook.config import get_settings
    from courtbook.models.portal import PortalCredentials

    settings = get_settings()
    async with PortalSession(
        settings.portal_base_url,
        sport_id=settings.portal_sport_id,
        timeout=settings.request_timeout_seconds,
    ) as session:
        await session.login(PortalCredentials(username=username, password=password))


def register_credential_tools(mcp: FastMCP) -> None:
    """Register credential storage tools on the MCP server."""

    @mcp.tool
    async def store_portal_credentials(
        owner_id: str,
        username: str,
        password: str,
        verify: bool = True,
    ) -> str:
        """Save your court-booking portal login for automated booking.
        The password is encrypted before it is stored and is only
        decrypted while one of your bookings is being submitted.

        Args:
            owner_id: Account the login belongs to.
            username: Your portal username.
            password: Your portal password.
            verify: Log in once first to check the credentials.

        Returns:
            Confirmation that the credentials were saved, or why not.
        """
        from courtbook.clients.resilience import EngineError
        from courtbook.models.portal import PortalCredentials
        from courtbook.tools.error_messages import get_user_message

        if verify:
            try:
                await _verify_login(username, password)
            except EngineError as exc:
                logger.warning("Credential check failed for %s: %s", username, exc)
                return f"Credentials not saved. {get_user_message(exc)}"

        store = get_credential_store()
        await store.save(owner_id, PortalCredentials(username=username, password=password))
        verified = " and verified" if verify else ""
        return f"Portal credentials for {username} saved{verified}."

    @mcp.tool
    async def delete_portal_credentials(owner_id: str) -> str:
        """Remove your stored portal login. Scheduled bookings will fail
        until new credentials are stored.

        Args:
            owner_id: Account whose login to remove.

        Returns:
            Whether anything was removed.
        """
        store = get_credential_store()
        if await store.delete(owner_id):
            return "Portal credentials removed."
        return "No portal credentials were stored."
