"""
TIMBRADO-NOMINA — PAC Client contract
Uniform stamp(document, credentials, sandbox) -> StampResult.

StampResult is a tagged union:
    Stamped(uuid, stamped_document)  — the PAC certified the document
    Failed(reason)                   — anything else, reason passed through verbatim

Adapters never raise for transport or provider errors; the orchestrator
must always be able to persist a terminal state from the returned value.
"""

from abc import ABC, abstractmethod
from typing import Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import PacProvider, get_pac_url, settings
from app.sat.cfdi_document import FiscalDocument


class PacCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    password: str = Field(repr=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.username.strip() and self.password)


class PacConfiguration(BaseModel):
    """Per-company PAC account, read-only input for the orchestrator."""
    model_config = ConfigDict(frozen=True)

    provider: str
    credentials: PacCredentials
    sandbox: bool = True


class Stamped(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["stamped"] = "stamped"
    uuid: str
    stamped_document: str


class Failed(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["failed"] = "failed"
    reason: str


StampResult = Union[Stamped, Failed]


class PacClient(ABC):
    """
    Base class for PAC adapters.

    Usage:
        client = FinkokSoapClient(http_client=shared_async_client)
        result = await client.stamp(document, credentials, sandbox=True)
        if isinstance(result, Stamped): ...

    When no http_client is injected, a short-lived AsyncClient with the
    configured timeout is opened per call.
    """

    provider: PacProvider

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client

    def base_url(self, sandbox: bool) -> str:
        return get_pac_url(self.provider, sandbox)

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(url, **kwargs)
        async with httpx.AsyncClient(
            timeout=settings.pac_http_timeout_seconds, verify=True
        ) as client:
            return await client.post(url, **kwargs)

    @abstractmethod
    async def stamp(self, document: FiscalDocument, credentials: PacCredentials,
                    sandbox: bool) -> StampResult:
        ...


def describe_exception(exc: BaseException) -> str:
    """Failure reason for transport errors; some httpx errors have an empty str()."""
    text = str(exc).strip()
    return text or exc.__class__.__name__
