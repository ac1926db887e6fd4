"""
Excepciones personalizadas para el cliente SUNAT
"""
from typing import Optional


class SunatException(Exception):
    """Excepción base para errores SUNAT"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class SunatValidationError(SunatException):
    """Borrador inválido (datos fiscales, totales, campos requeridos)"""
    def __init__(self, message: str, code: Optional[str] = "VALIDATION_ERROR", errors=None):
        self.errors = list(errors or [])
        super().__init__(message, code)


class SunatSignatureError(SunatException):
    """Error en la firma digital o en el certificado"""
    pass


class SunatConfigError(SunatException):
    """Configuración o credenciales faltantes"""
    pass


class SunatClientError(SunatException):
    """Error permanente del cliente SUNAT (autenticación, request mal formado)"""
    pass


class SunatResponseError(SunatClientError):
    """Respuesta de SUNAT que no se pudo interpretar"""
    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        self.http_status = http_status
        super().__init__(message, code)


class SunatTransientError(SunatException):
    """Error transitorio (timeout, conexión, 5xx, servicio no disponible). Se reintenta."""
    def __init__(self, message: str, code: Optional[str] = "NETWORK_ERROR", http_status: Optional[int] = None):
        self.http_status = http_status
        super().__init__(message, code)


class SunatStateError(SunatException):
    """Operación no permitida para el estado actual del documento o job"""
    pass


class InvalidTransition(SunatStateError):
    """Transición de estado no definida"""
    def __init__(self, state: str, event: str):
        self.state = state
        self.event = event
        super().__init__(f"Transición inválida: {event} sobre documento en estado {state}", "INVALID_TRANSITION")
