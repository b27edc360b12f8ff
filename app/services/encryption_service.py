"""
TIMBRADO-NOMINA: Cifrado de credenciales PAC
=============================================
Contraseñas de cuentas PAC cifradas con Fernet, con una key derivada
por empresa a partir de ENCRYPTION_MASTER_KEY.

Los tokens se guardan en mx_pac_configurations.credentials como hex
(campo password_encrypted).

Uso:
    svc = EncryptionService()
    stored = svc.encrypt_password("s3cret", company_id)      # hex str
    plain = svc.decrypt_password(stored, company_id)
"""
import base64
import hashlib
import os

from cryptography.fernet import Fernet, InvalidToken


class CredentialDecryptionError(Exception):
    """Stored PAC password could not be decrypted with this company's key."""


class EncryptionService:
    """Cifrado multi-empresa con key derivada por company_id."""

    def __init__(self, master_key: str | None = None):
        self._master_key = (master_key or os.environ["ENCRYPTION_MASTER_KEY"]).encode()

    def _fernet(self, company_id: str) -> Fernet:
        raw = hashlib.sha256(self._master_key + company_id.encode()).digest()
        return Fernet(base64.urlsafe_b64encode(raw))

    def encrypt_password(self, password: str, company_id: str) -> str:
        """Cifra una contraseña PAC y la devuelve como hex para la columna JSON."""
        return self._fernet(company_id).encrypt(password.encode("utf-8")).hex()

    def decrypt_password(self, stored_hex: str, company_id: str) -> str:
        try:
            token = bytes.fromhex(stored_hex)
            return self._fernet(company_id).decrypt(token).decode("utf-8")
        except (ValueError, InvalidToken) as e:
            raise CredentialDecryptionError(
                f"No se pudo descifrar la contraseña PAC de la empresa {company_id}"
            ) from e

    @staticmethod
    def generate_master_key() -> str:
        """Genera una master key nueva para ENCRYPTION_MASTER_KEY."""
        return Fernet.generate_key().decode()
