"""
models.py
---------
Modelos SQLAlchemy del pipeline de confianza del checkout.

Tablas:
  - RiskAssessment           → evaluación de riesgo inmutable (auditoría)
  - RiskAssessmentStoreLink  → tiendas involucradas en una evaluación
  - VerificationChallenge    → desafío OTP con su snapshot del pago
  - PaymentTransaction       → estado local de cada payment intent
  - Order                    → orden del marketplace (estado y estado de pago)

Principios de diseño:
  - created_at/updated_at siempre timezone-aware en UTC → auditoría correcta
  - JSONB en PostgreSQL, JSON genérico en otros motores (tests con SQLite)
  - Claves naturales con UNIQUE: token, dedup_key, external_transaction_id
    → la base de datos resuelve las carreras, no un lock en memoria
  - Montos en Numeric(12,2) y unidades mayores de la moneda
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime que siempre devuelve valores aware en UTC.

    SQLite no guarda la zona horaria: se persiste en UTC sin tzinfo y se
    reconstruye al leer. PostgreSQL usa timestamptz nativo.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────────────────────────────
# EVALUACIONES DE RIESGO
# Registro inmutable de cada decisión del motor. Se escribe una vez y
# nunca se actualiza.
# ─────────────────────────────────────────────────────────────────────
class RiskAssessment(Base):
    __tablename__ = "risk_assessments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id:  Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    order_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    # Snapshot del contexto evaluado
    amount:                Mapped[Decimal]    = mapped_column(Numeric(12, 2), nullable=False)
    currency:              Mapped[str]        = mapped_column(String(3), nullable=False)
    item_count:            Mapped[int]        = mapped_column(Integer, nullable=False, default=0)
    unique_item_count:     Mapped[int]        = mapped_column(Integer, nullable=False, default=0)
    max_single_quantity:   Mapped[int]        = mapped_column(Integer, nullable=False, default=0)
    store_count:           Mapped[int]        = mapped_column(Integer, nullable=False, default=0)
    is_authenticated:      Mapped[bool]       = mapped_column(Boolean, nullable=False, default=False)
    is_new_payment_method: Mapped[bool]       = mapped_column(Boolean, nullable=False, default=False)
    user_agent:            Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address:            Mapped[str | None] = mapped_column(String(45), nullable=True)
    context_snapshot:      Mapped[dict]       = mapped_column(JsonType, nullable=False, default=dict)

    # Resultado
    score:      Mapped[int]   = mapped_column(Integer, nullable=False)
    decision:   Mapped[str]   = mapped_column(String(10), nullable=False, index=True)
    confidence: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False)
    factors:    Mapped[list]  = mapped_column(JsonType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    store_links: Mapped[list["RiskAssessmentStoreLink"]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )
    order_links: Mapped[list["RiskAssessmentOrderLink"]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )


class RiskAssessmentStoreLink(Base):
    __tablename__ = "risk_assessment_stores"

    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("risk_assessments.id", ondelete="CASCADE"), primary_key=True
    )
    store_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    assessment: Mapped[RiskAssessment] = relationship(back_populates="store_links")


class RiskAssessmentOrderLink(Base):
    """Una evaluación multi-tienda termina en una orden por tienda."""
    __tablename__ = "risk_assessment_orders"

    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("risk_assessments.id", ondelete="CASCADE"), primary_key=True
    )
    order_id:   Mapped[int]      = mapped_column(Integer, primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    assessment: Mapped[RiskAssessment] = relationship(back_populates="order_links")


# ─────────────────────────────────────────────────────────────────────
# DESAFÍOS DE VERIFICACIÓN
# Estado: pending → verified | pending → expired. Ambos son terminales.
# ─────────────────────────────────────────────────────────────────────
class VerificationChallenge(Base):
    __tablename__ = "verification_challenges"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    token:      Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id:    Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)

    # bcrypt del código de 6 dígitos, nunca el texto plano
    otp_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    payment_context: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    risk_score:      Mapped[int]  = mapped_column(Integer, nullable=False)
    risk_factors:    Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(10), nullable=False, default="pending")

    # user_id:tramo_de_monto:bucket, NULL cuando el desafío deja de ser deduplicable
    dedup_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    email_sent:   Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resend_count: Mapped[int]  = mapped_column(Integer, nullable=False, default=0)

    expires_at:  Mapped[datetime]        = mapped_column(UTCDateTime, nullable=False)
    created_at:  Mapped[datetime]        = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resumed_at:  Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_challenges_status_expires", "status", "expires_at"),
    )


# ─────────────────────────────────────────────────────────────────────
# ÓRDENES Y TRANSACCIONES
# ─────────────────────────────────────────────────────────────────────
class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id:        Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status:         Mapped[str]        = mapped_column(String(20), nullable=False, default="pending")
    payment_status: Mapped[str]        = mapped_column(String(20), nullable=False, default="pending")
    total_amount:   Mapped[Decimal]    = mapped_column(Numeric(12, 2), nullable=False)
    currency:       Mapped[str]        = mapped_column(String(3), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    order_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id:  Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount:   Mapped[Decimal]    = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str]        = mapped_column(String(3), nullable=False)
    status:   Mapped[str]        = mapped_column(String(20), nullable=False, default="pending")

    # Id del payment intent en el proveedor → clave de idempotencia de webhooks
    external_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    gateway_response: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
