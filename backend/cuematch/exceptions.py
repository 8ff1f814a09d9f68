"""
Excepciones de la aplicación.

Cada excepción lleva su código HTTP; el manejador global de ``main.py`` las
serializa y los handlers de Socket.IO las convierten en un ack ``ok: False``.
"""

from fastapi import status


class AppException(Exception):
    """Excepción base de la aplicación."""

    # Código corto para acks de Socket.IO
    code = "server_error"

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class AuthenticationError(AppException):
    """Credencial ausente o inválida."""
    code = "unauthenticated"

    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(status.HTTP_401_UNAUTHORIZED, detail)


class AuthorizationError(AppException):
    """El usuario no participa en la partida."""
    code = "not_authorized"

    def __init__(self, detail: str = "Not authorized"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class ValidationError(AppException):
    """Datos de entrada malformados."""
    code = "invalid_input"

    def __init__(self, detail: str = "Validation error"):
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, detail)


class NotFoundError(AppException):
    code = "not_found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status.HTTP_404_NOT_FOUND, detail)


class ConflictError(AppException):
    """Transición inválida desde el estado actual de la partida."""
    code = "invalid_status"

    def __init__(self, detail: str = "Conflict with current match state"):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class StorageError(AppException):
    """
    Fallo de la base de datos. La transacción completa fue revertida:
    ningún saldo, asiento ni partida quedó modificado.
    """
    code = "storage_error"

    def __init__(self, detail: str = "Storage failure. Funds safe, match state unchanged."):
        super().__init__(status.HTTP_500_INTERNAL_SERVER_ERROR, detail)
