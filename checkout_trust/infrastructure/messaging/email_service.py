"""
email_service.py
----------------
Despachador de emails de verificación via SMTP.

Usa aiosmtplib para envío asíncrono sin bloquear el event loop.
Compatible con cualquier servidor SMTP con STARTTLS.

El dispatcher NO es un singleton de módulo: se construye una vez en el
lifespan de main.py, se guarda en app.state y se inyecta con Depends.
Los tests inyectan su propio dispatcher.

Uso:
    dispatcher = EmailDispatcher.from_settings(settings)
    ok = await dispatcher.send_otp(to="usuario@gmail.com", code="847291")
"""

from decimal import Decimal
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from checkout_trust.core.config import Settings

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """
    Envía el código de verificación de compra.

    Contrato: send_otp(...) → True si el servidor SMTP aceptó el mensaje,
    False en cualquier otro caso. Nunca lanza excepciones.
    """

    def __init__(
        self,
        hostname:   str,
        port:       int,
        sender:     str,
        username:   Optional[str] = None,
        password:   Optional[str] = None,
        start_tls:  bool = True,
        timeout:    float = 10.0,
        store_name: str = "Marketplace",
    ) -> None:
        self.hostname   = hostname
        self.port       = port
        self.sender     = sender
        self.username   = username
        self.password   = password
        self.start_tls  = start_tls
        self.timeout    = timeout
        self.store_name = store_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailDispatcher":
        return cls(
            hostname   = settings.SMTP_HOST,
            port       = settings.SMTP_PORT,
            sender     = settings.EMAIL_FROM,
            username   = settings.SMTP_USER,
            password   = settings.SMTP_PASSWORD,
            start_tls  = settings.SMTP_START_TLS,
            timeout    = settings.SMTP_TIMEOUT_SECONDS,
            store_name = settings.STORE_NAME,
        )

    async def _send(self, to: str, subject: str, html: str, text: str) -> bool:
        """
        Método base de envío. Maneja la conexión SMTP y el envío.
        Retorna True si se envió correctamente, False si hubo error.
        """
        message = MIMEMultipart("alternative")
        message["From"]    = self.sender
        message["To"]      = to
        message["Subject"] = subject
        message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                message,
                hostname  = self.hostname,
                port      = self.port,
                username  = self.username,
                password  = self.password,
                start_tls = self.start_tls,
                timeout   = self.timeout,
            )
            logger.info(f"[Email] Enviado correctamente a {to} — asunto: {subject}")
            return True

        except aiosmtplib.SMTPException as e:
            logger.error(f"[Email] Error SMTP enviando a {to}: {e}")
        except OSError as e:
            logger.error(f"[Email] Error de red enviando a {to}: {e}")

        return False

    # ------------------------------------------------------------------ #
    #  Templates de email                                                 #
    # ------------------------------------------------------------------ #

    async def send_otp(
        self,
        to:              str,
        code:            str,
        user_name:       Optional[str] = None,
        amount:          Optional[Decimal] = None,
        currency:        Optional[str] = None,
        expires_minutes: int = 10,
    ) -> bool:
        """
        Envía el código de verificación de compra.

        Parámetros:
          to        → email del usuario
          code      → código de 6 dígitos generado por el VerificationManager
          user_name → para el saludo (opcional)
          amount    → monto de la compra que se está verificando (opcional)
        """
        greeting = f"Hola {user_name}," if user_name else "Hola,"
        amount_line = ""
        if amount is not None:
            amount_line = f"Monto de la compra: {amount} {(currency or '').upper()}".strip()

        subject = f"Tu código de verificación — {self.store_name}"
        text = (
            f"{greeting}\n\n"
            f"Tu código de verificación es: {code}\n"
            f"Válido por {expires_minutes} minutos.\n"
            f"{amount_line}\n\n"
            f"Si no intentaste esta compra, ignora este mensaje."
        )
        html = f"""
        <!DOCTYPE html>
        <html lang="es">
        <head><meta charset="UTF-8"></head>
        <body style="margin:0; padding:0; background-color:#f4f4f4; font-family:Arial,sans-serif;">
            <table width="100%" cellpadding="0" cellspacing="0">
                <tr>
                    <td align="center" style="padding:40px 0;">
                        <table width="480" cellpadding="0" cellspacing="0"
                               style="background:#ffffff; border-radius:8px;">
                            <tr>
                                <td style="background:#1a1a2e; border-radius:8px 8px 0 0;
                                           padding:24px 32px;">
                                    <h1 style="color:#ffffff; margin:0; font-size:22px;">
                                        {self.store_name}
                                    </h1>
                                </td>
                            </tr>
                            <tr>
                                <td style="padding:32px;">
                                    <p style="color:#333333; font-size:16px; margin:0 0 8px;">
                                        {greeting}
                                    </p>
                                    <p style="color:#666666; font-size:14px; margin:0 0 24px;">
                                        Ingresa este código para confirmar tu compra.
                                        Válido por <strong>{expires_minutes} minutos</strong>.
                                        {amount_line}
                                    </p>
                                    <div style="background:#f0f4ff; border:2px solid #4361ee;
                                                border-radius:8px; padding:20px;
                                                text-align:center; margin:0 0 24px;">
                                        <span style="font-size:36px; font-weight:700;
                                                     color:#4361ee; letter-spacing:10px;">
                                            {code}
                                        </span>
                                    </div>
                                    <p style="color:#999999; font-size:12px; margin:0;">
                                        Si no intentaste esta compra, ignora este mensaje.
                                        Nunca compartas tu código con nadie.
                                    </p>
                                </td>
                            </tr>
                        </table>
                    </td>
                </tr>
            </table>
        </body>
        </html>
        """
        return await self._send(to=to, subject=subject, html=html, text=text)
