"""
exceptions.py
-------------
Excepciones personalizadas del pipeline de confianza del checkout.

Todas heredan de CheckoutTrustException para poder capturarlas
en un solo handler global en main.py. Cada clase define:
  - status_code → código HTTP con el que se responde
  - code        → identificador estable que consume el frontend
  - message     → texto por defecto para el usuario

Uso en main.py:
    @app.exception_handler(CheckoutTrustException)
    async def handler(request: Request, exc: CheckoutTrustException):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
"""


class CheckoutTrustException(Exception):
    """Base de todas las excepciones del pipeline."""
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Error interno del servicio de checkout."

    def __init__(self, message: str | None = None, **extra):
        self.message = message or self.__class__.message
        self.extra   = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.extra}


# ─────────────────────────────────────────────────────────────────────
# Errores de validación y autenticación
# ─────────────────────────────────────────────────────────────────────

class CheckoutValidationException(CheckoutTrustException):
    """El request no cumple con el contrato esperado."""
    status_code = 422
    code = "VALIDATION_ERROR"
    message = "Los datos del checkout son inválidos."


class UnauthorizedException(CheckoutTrustException):
    """Token ausente, inválido o expirado."""
    status_code = 401
    code = "UNAUTHORIZED"
    message = "Debes iniciar sesión para continuar."


class ForbiddenChallengeException(UnauthorizedException):
    """El desafío pertenece a otro usuario."""
    status_code = 403
    message = "Este código de verificación no pertenece a tu cuenta."


# ─────────────────────────────────────────────────────────────────────
# Errores de verificación (OTP)
# ─────────────────────────────────────────────────────────────────────

class ChallengeNotFoundException(CheckoutTrustException):
    """Token desconocido o ya consumido. Terminal: reiniciar el checkout."""
    status_code = 404
    code = "NOT_FOUND"
    message = "La verificación no existe o ya fue utilizada. Reinicia el checkout."


class ChallengeExpiredException(CheckoutTrustException):
    """El código expiró. Terminal: reiniciar el checkout."""
    status_code = 410
    code = "EXPIRED"
    message = "El código de verificación ha expirado. Reinicia el checkout."


class InvalidCodeException(CheckoutTrustException):
    """Código incorrecto. Recuperable hasta que el desafío expire."""
    status_code = 400
    code = "INVALID_CODE"
    message = "Código de verificación incorrecto."


class ResendCooldownException(CheckoutTrustException):
    """Se pidió un reenvío antes de que termine el cooldown."""
    status_code = 429
    code = "RESEND_COOLDOWN"
    message = "Espera unos segundos antes de solicitar otro código."


class VerificationMismatchException(CheckoutTrustException):
    """El pago que se intenta retomar no coincide con el verificado."""
    status_code = 409
    code = "VERIFICATION_MISMATCH"
    message = "Los datos del pago no coinciden con la transacción verificada."


# ─────────────────────────────────────────────────────────────────────
# Errores de pagos y webhooks
# ─────────────────────────────────────────────────────────────────────

class TransactionNotFoundException(CheckoutTrustException):
    """No existe (todavía) una transacción para la clave consultada."""
    status_code = 404
    code = "NOT_FOUND"
    message = "Transacción no encontrada."


class AssessmentNotFoundException(CheckoutTrustException):
    """La evaluación no existe o pertenece a otro usuario."""
    status_code = 404
    code = "NOT_FOUND"
    message = "La evaluación de riesgo no existe."


class SignatureInvalidException(CheckoutTrustException):
    """La firma del webhook no es válida."""
    status_code = 400
    code = "SIGNATURE_INVALID"
    message = "Firma del webhook inválida."


class InvalidWebhookPayloadException(CheckoutTrustException):
    """El cuerpo del webhook no es un evento JSON válido."""
    status_code = 400
    code = "INVALID_PAYLOAD"
    message = "Payload del webhook inválido."


# ─────────────────────────────────────────────────────────────────────
# Errores de infraestructura
# ─────────────────────────────────────────────────────────────────────

class UpstreamProviderException(CheckoutTrustException):
    """Falla de un proveedor externo (pagos o email)."""
    status_code = 502
    code = "UPSTREAM_PROVIDER_ERROR"
    message = "Un proveedor externo no respondió. Intenta nuevamente."


class PaymentProviderException(UpstreamProviderException):
    """El proveedor de pagos rechazó o no respondió la operación."""
    message = "No se pudo procesar el pago con el proveedor. Intenta nuevamente."


class EmailDeliveryException(UpstreamProviderException):
    """No se pudo enviar el código de verificación."""
    status_code = 503
    message = "No pudimos enviar el código de verificación. Intenta nuevamente."


class PersistenceException(CheckoutTrustException):
    """PostgreSQL no está disponible o rechazó la escritura."""
    status_code = 503
    code = "PERSISTENCE_ERROR"
    message = "Servicio temporalmente no disponible. Intenta en unos momentos."
