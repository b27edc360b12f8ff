"""
TIMBRADO-NOMINA Core Configuration
PAC endpoint registry and application settings.
"""

from enum import Enum

from pydantic_settings import BaseSettings


class PacProvider(str, Enum):
    FINKOK = "finkok"          # SOAP
    FACTURAMA = "facturama"    # REST/JSON


class Settings(BaseSettings):
    app_name: str = "TIMBRADO-NOMINA"
    app_version: str = "1.0.0"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    # Outbound PAC calls
    pac_http_timeout_seconds: float = 30.0
    soap_hard_timeout_seconds: float = 45.0
    rest_api_version: str = "3"
    rest_documents_path: str = "/{version}/documents"

    cors_origins: list[str] = ["*"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


# ─────────────────────────────────────────────────────────────
# PAC URL REGISTRY
# One entry per provider; the sandbox flag of the company's
# PAC configuration selects the column.
# ─────────────────────────────────────────────────────────────

PAC_URLS = {
    PacProvider.FINKOK: {
        "sandbox":    "https://demo-facturacion.finkok.com/servicios/soap/stamp",
        "production": "https://facturacion.finkok.com/servicios/soap/stamp",
    },
    PacProvider.FACTURAMA: {
        "sandbox":    "https://apisandbox.facturama.mx",
        "production": "https://api.facturama.mx",
    },
}


def get_pac_url(provider: PacProvider, sandbox: bool) -> str:
    """Get the base URL of a PAC for the sandbox or production environment."""
    urls = PAC_URLS.get(provider)
    if not urls:
        raise ValueError(f"Unknown PAC provider: {provider}")
    return urls["sandbox" if sandbox else "production"]
