import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from checkout_trust.core.config import settings
from checkout_trust.core.exceptions import UnauthorizedException

OTP_LENGTH       = 6      # Dígitos del código
OTP_BCRYPT_ROUNDS = 10    # Coste del hash del código
TOKEN_BYTES      = 32     # 64 caracteres hex


class SecurityManager:

    # ── Códigos de verificación ──────────────────────────────────────

    @staticmethod
    def generate_otp() -> str:
        """Código numérico de 6 dígitos con CSPRNG (incluye ceros a la izquierda)."""
        return str(secrets.randbelow(10 ** OTP_LENGTH)).zfill(OTP_LENGTH)

    @staticmethod
    def hash_otp(code: str) -> str:
        """Hash irreversible del código. Nunca se guarda el texto plano."""
        return bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=OTP_BCRYPT_ROUNDS)).decode()

    @staticmethod
    def verify_otp(code: str, otp_hash: str) -> bool:
        try:
            return bcrypt.checkpw(code.encode(), otp_hash.encode())
        except ValueError:
            return False

    @staticmethod
    def generate_token() -> str:
        """Token opaco e impredecible para identificar un desafío."""
        return secrets.token_hex(TOKEN_BYTES)

    @staticmethod
    def mask_email(email: str) -> str:
        """ana.perez@gmail.com → a*******z@gmail.com"""
        local, _, domain = email.partition("@")
        if not domain:
            return "***"
        if len(local) <= 2:
            masked = local[:1] + "*"
        else:
            masked = local[0] + "*" * (len(local) - 2) + local[-1]
        return f"{masked}@{domain}"

    # ── JWT de sesión ────────────────────────────────────────────────

    @staticmethod
    def create_access_token(data: dict, expires_minutes: int = 60) -> str:
        """Crea el token JWT para la sesión del usuario."""
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def decode_access_token(token: str) -> dict:
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError:
            raise UnauthorizedException("Token inválido, manipulado o expirado.")
        if not payload.get("sub"):
            raise UnauthorizedException("El token no contiene identificación de usuario.")
        return payload
