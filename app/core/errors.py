"""
TIMBRADO-NOMINA: Errores del servicio de timbrado
==================================================
Every error carries the message shown to the operator, a stable code
and the HTTP status the invocation boundary answers with.
"""


class StampServiceError(Exception):
    """Base for every typed stamping failure."""
    status_code = 500
    code = "STAMP_ERROR"

    def __init__(self, message: str, code: str | None = None,
                 status_code: int | None = None):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ConfigurationMissing(StampServiceError):
    """No PAC configuration for the company, or credentials incomplete."""
    status_code = 400
    code = "CONFIGURATION_MISSING"


class UnsupportedProvider(StampServiceError):
    status_code = 400
    code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Proveedor PAC no soportado: '{provider}'")


class AlreadyStamped(StampServiceError):
    status_code = 400
    code = "ALREADY_STAMPED"

    def __init__(self, record_id: str, uuid: str | None = None):
        self.record_id = record_id
        self.uuid = uuid
        super().__init__(f"El CFDI {record_id} ya fue timbrado (UUID {uuid or 'desconocido'})")


class RecordNotPending(StampServiceError):
    """The record is in a terminal state that does not allow the operation."""
    status_code = 400
    code = "RECORD_NOT_PENDING"

    def __init__(self, record_id: str, status: str):
        self.record_id = record_id
        self.status = status
        super().__init__(f"El CFDI {record_id} está en estado '{status}'")


class RecordNotFound(StampServiceError):
    status_code = 404
    code = "RECORD_NOT_FOUND"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Registro CFDI no encontrado: {record_id}")
