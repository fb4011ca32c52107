"""
schemas.py
----------
Schemas Pydantic para validación de requests y responses.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional, List
import uuid

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from checkout_trust.core.config import settings

UNKNOWN_STORE = "unknown"


# ─────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────

class RiskDecision(str, Enum):
    ALLOW = "allow"
    WARN  = "warn"
    DENY  = "deny"


class ChallengeStatus(str, Enum):
    PENDING  = "pending"
    VERIFIED = "verified"
    EXPIRED  = "expired"


class TransactionStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    CANCELLED  = "cancelled"


class OrderStatus(str, Enum):
    PENDING   = "pending"
    CONFIRMED = "confirmed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class OrderPaymentStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    PAID       = "paid"
    FAILED     = "failed"
    CANCELLED  = "cancelled"


# ─────────────────────────────────────────────────────────────────────
# AUTENTICACIÓN
# ─────────────────────────────────────────────────────────────────────

class CurrentUser(BaseModel):
    """Usuario autenticado extraído del JWT."""
    user_id: str
    email:   Optional[EmailStr] = None
    name:    Optional[str] = None
    role:    str = "customer"


# ─────────────────────────────────────────────────────────────────────
# CHECKOUT
# ─────────────────────────────────────────────────────────────────────

class CartItem(BaseModel):
    product_id: str            = Field(..., min_length=1, max_length=64)
    store_id:   Optional[str]  = Field(None, max_length=64)
    quantity:   int            = Field(..., ge=1, le=100_000)
    unit_price: Optional[Decimal] = Field(None, ge=0)


class TransactionContext(BaseModel):
    """
    Contexto de una transacción de checkout.

    Todos los campos de señal (user_agent, países, historial) son opcionales:
    el motor de riesgo los trata como 0 puntos cuando faltan.
    """
    model_config = ConfigDict(extra="forbid")

    # ── Transacción (obligatorios) ─────────────────────────────────────
    amount:   Decimal        = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: str            = Field(default_factory=lambda: settings.DEFAULT_CURRENCY, min_length=3, max_length=3)
    items:    List[CartItem] = Field(..., min_length=1)

    # ── Orden y método de pago ─────────────────────────────────────────
    order_id:              Optional[int] = Field(None, ge=1)
    payment_method_id:     Optional[str] = Field(None, max_length=255)
    save_payment_method:   bool          = False
    is_new_payment_method: bool          = False

    # ── Señales del request (el router completa las que falten) ────────
    user_agent:       Optional[str] = Field(None, max_length=1024)
    ip_address:       Optional[str] = Field(None, max_length=45)
    ip_country:       Optional[str] = Field(None, min_length=2, max_length=2)
    shipping_country: Optional[str] = Field(None, min_length=2, max_length=2)

    # ── Historial reciente del usuario ─────────────────────────────────
    recent_transaction_failures:  Optional[int] = Field(None, ge=0)
    session_payment_method_count: Optional[int] = Field(None, ge=0)
    account_age_days:             Optional[int] = Field(None, ge=0)

    # ── Sesión y cuenta (los completa el proveedor de identidad) ───────
    session_token_age_seconds: Optional[int]   = Field(None, ge=0)
    concurrent_sessions:       Optional[int]   = Field(None, ge=0)
    failed_login_attempts:     Optional[int]   = Field(None, ge=0)
    total_past_transactions:   Optional[int]   = Field(None, ge=0)
    transaction_success_rate:  Optional[float] = Field(None, ge=0, le=100)   # porcentaje

    # ── Reanudación tras verificación ──────────────────────────────────
    verification_token: Optional[str] = Field(None, min_length=16, max_length=64)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency debe ser un código ISO de 3 letras")
        return v.lower()

    @field_validator("ip_country", "shipping_country")
    @classmethod
    def normalize_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @property
    def item_count(self) -> int:
        """Cantidad total de unidades en el carrito."""
        return sum(item.quantity for item in self.items)

    @property
    def unique_item_count(self) -> int:
        return len({item.product_id for item in self.items})

    @property
    def max_single_quantity(self) -> int:
        return max((item.quantity for item in self.items), default=0)

    @property
    def store_ids(self) -> list[str]:
        """Tiendas distintas en orden de aparición."""
        seen: list[str] = []
        for item in self.items:
            store = item.store_id or UNKNOWN_STORE
            if store not in seen:
                seen.append(store)
        return seen

    @property
    def store_count(self) -> int:
        return len(self.store_ids)

    def payment_snapshot(self) -> dict:
        """Snapshot serializable que se guarda en el desafío de verificación."""
        return self.model_dump(mode="json", exclude={"verification_token"})


class RiskFactor(BaseModel):
    """
    Explicación de un factor de riesgo individual.
    Uno por cada regla que se activó en la evaluación.
    """
    code:        str          # Código interno del factor (e.g. HIGH_AMOUNT)
    points:      int          # Puntos que este factor sumó al score
    description: str          # Explicación en lenguaje natural del motivo
    hard:        bool = False # Si por sí solo puede forzar un deny


class RiskResult(BaseModel):
    score:         int                 = Field(..., ge=0, le=100)
    decision:      RiskDecision
    confidence:    float               = Field(..., ge=0, le=1)
    factors:       List[RiskFactor]    = Field(default_factory=list)
    assessment_id: Optional[uuid.UUID] = None


class CheckoutProceedResponse(BaseModel):
    outcome:           Literal["proceed"] = "proceed"
    client_secret:     str
    payment_intent_id: str
    transaction_id:    int
    risk_score:        int
    assessment_id:     Optional[uuid.UUID] = None


class CheckoutVerificationResponse(BaseModel):
    outcome:            Literal["verification_required"] = "verification_required"
    verification_token: str
    expires_at:         datetime
    masked_email:       str
    risk_score:         int
    assessment_id:      Optional[uuid.UUID] = None


class CheckoutBlockedResponse(BaseModel):
    outcome:         Literal["blocked"] = "blocked"
    risk_score:      int
    factors:         List[RiskFactor]
    support_contact: str
    message:         str = "No pudimos procesar esta compra. Contacta a soporte."
    assessment_id:   Optional[uuid.UUID] = None


# ─────────────────────────────────────────────────────────────────────
# VERIFICACIÓN
# ─────────────────────────────────────────────────────────────────────

class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=16, max_length=64)
    code:  str = Field(..., pattern=r"^\d{6}$")


class VerifyCodeResponse(BaseModel):
    success:                bool = True
    resume_payment_context: dict


class ResendCodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=16, max_length=64)


class ResendCodeResponse(BaseModel):
    success:      bool = True
    expires_at:   datetime
    masked_email: str


class ChallengeStatusResponse(BaseModel):
    token:        str
    status:       ChallengeStatus
    expires_at:   datetime
    email_sent:   bool
    masked_email: str
    verified_at:  Optional[datetime] = None


# ─────────────────────────────────────────────────────────────────────
# PAGOS
# ─────────────────────────────────────────────────────────────────────

class ConfirmPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_method_id: Optional[str] = Field(None, max_length=255)


class TransactionSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id:       int
    payment_intent_id:    str
    order_id:             Optional[int] = None
    amount:               Decimal
    currency:             str
    status:               TransactionStatus
    order_status:         Optional[OrderStatus] = None
    order_payment_status: Optional[OrderPaymentStatus] = None
    updated_at:           datetime


# ─────────────────────────────────────────────────────────────────────
# EVALUACIONES DE RIESGO
# ─────────────────────────────────────────────────────────────────────

class LinkOrdersRequest(BaseModel):
    """Órdenes creadas a partir de una misma evaluación (una por tienda)."""
    model_config = ConfigDict(extra="forbid")

    order_ids: List[int] = Field(..., min_length=1, max_length=50)

    @field_validator("order_ids")
    @classmethod
    def positive_unique(cls, v: List[int]) -> List[int]:
        if any(order_id < 1 for order_id in v):
            raise ValueError("order_ids debe contener ids positivos")
        return list(dict.fromkeys(v))


class LinkOrdersResponse(BaseModel):
    success:        bool = True
    assessment_id:  uuid.UUID
    linked:         List[int]   # vínculos nuevos
    already_linked: List[int]   # ya existían
