from azure.identity.aio import DefaultAzureCredential

from reminder.helpers.cache import lru_acache
from reminder.helpers.http import azure_transport


@lru_acache()
async def credential() -> DefaultAzureCredential:
    """
    Azure credential used by the Cosmos DB store.

    Resolved from the environment, a managed identity or the Azure CLI, in that order.
    """
    return DefaultAzureCredential(
        # Performance
        transport=await azure_transport(),
    )
