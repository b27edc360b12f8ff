"""
TIMBRADO-NOMINA — PAC adapter registry
Closed map PacProvider -> adapter class. Adding a provider means a new
PacClient subclass plus one entry here; the orchestrator is untouched.
"""

from typing import Optional

import httpx

from app.core.config import PacProvider
from app.core.errors import UnsupportedProvider
from app.modules.pac_client import PacClient
from app.modules.rest_pac import FacturamaRestClient
from app.modules.soap_pac import FinkokSoapClient

PAC_CLIENTS: dict[PacProvider, type[PacClient]] = {
    PacProvider.FINKOK: FinkokSoapClient,
    PacProvider.FACTURAMA: FacturamaRestClient,
}


def resolve_provider(provider: str) -> PacProvider:
    """Case-insensitive match against the supported providers."""
    key = (provider or "").strip().lower()
    try:
        resolved = PacProvider(key)
    except ValueError:
        raise UnsupportedProvider(provider) from None
    if resolved not in PAC_CLIENTS:
        raise UnsupportedProvider(provider)
    return resolved


def get_pac_client(provider: str,
                   http_client: Optional[httpx.AsyncClient] = None) -> PacClient:
    """Adapter instance for a configured provider string."""
    return PAC_CLIENTS[resolve_provider(provider)](http_client=http_client)
