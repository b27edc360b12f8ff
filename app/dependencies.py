"""
TIMBRADO-NOMINA: Dependencias FastAPI
======================================
Inyección de dependencias para almacenamiento y servicios.
"""
import os
from functools import lru_cache

from fastapi import Depends
from supabase import create_client, Client as SupabaseClient

from app.services.cfdi_store import CfdiStore
from app.services.encryption_service import EncryptionService
from app.services.stamp_service import StampingService


# ── Singletons ──

@lru_cache()
def get_supabase() -> SupabaseClient:
    """Supabase client singleton (service role)."""
    return create_client(
        os.environ["SUPABASE_URL"],
        os.environ["SUPABASE_SERVICE_ROLE_KEY"],
    )


@lru_cache()
def get_encryption() -> EncryptionService:
    """Encryption service singleton."""
    return EncryptionService()


def get_cfdi_store(
    supabase: SupabaseClient = Depends(get_supabase),
    encryption: EncryptionService = Depends(get_encryption),
) -> CfdiStore:
    return CfdiStore(supabase=supabase, encryption=encryption)


def get_stamping_service(store: CfdiStore = Depends(get_cfdi_store)) -> StampingService:
    """Servicio de timbrado con almacenamiento inyectado."""
    return StampingService(store=store)
