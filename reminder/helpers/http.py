from aiohttp import (
    AsyncResolver,
    ClientSession,
    ClientTimeout,
    DummyCookieJar,
    TCPConnector,
)
from azure.core.pipeline.transport._aiohttp import AioHttpTransport

from reminder.helpers.cache import lru_acache


@lru_acache()
async def aiohttp_session() -> ClientSession:
    """
    Create an AIOHTTP session, shared by the Azure SDK clients.

    Object is cached for performance.

    Returns a `ClientSession` instance.
    """
    return ClientSession(
        # Same config as default in the SDK
        auto_decompress=False,
        cookie_jar=DummyCookieJar(),
        trust_env=True,
        # Performance
        connector=TCPConnector(resolver=AsyncResolver()),
        # Reliability
        timeout=ClientTimeout(
            connect=5,
            total=60,
        ),
    )


@lru_acache()
async def azure_transport() -> AioHttpTransport:
    """
    Create an AIOHTTP transport, for Azure SDK.

    Object is cached for performance.

    Returns a `AioHttpTransport` instance.
    """
    # Azure SDK implements its own retry logic (e.g. for Cosmos DB), so we don't add it here
    return AioHttpTransport(
        session_owner=False,  # Restrict the SDK to close the client after usage
        session=await aiohttp_session(),
    )


async def close_sessions() -> None:
    """
    Close the shared AIOHTTP session.

    Must be called once, at application shutdown.
    """
    session = await aiohttp_session()
    if not session.closed:
        await session.close()
