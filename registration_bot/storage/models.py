from enum import Enum
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    UniqueConstraint,
)
from .database import Base


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class Event(Base):
    """
    Evento com inscrições abertas. Somente leitura para o bot.
    """
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(200), nullable=True, unique=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RateTier(Base):
    """
    Lote: preço válido dentro de uma janela de datas para um evento.
    """
    __tablename__ = "rate_tiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    starts_on = Column(Date, nullable=False)
    ends_on = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="active")


class District(Base):
    __tablename__ = "districts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)


class Church(Base):
    __tablename__ = "churches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=True, index=True)


class Registration(Base):
    """
    Inscrição: uma compra cobrindo um ou mais participantes de um evento.
    O total é calculado uma única vez, na criação.
    """
    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    contact_channel = Column(String(50), nullable=True, index=True)
    total = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Participant(Base):
    """
    Participante inscrito. O CPF é único por evento.
    """
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("event_id", "cpf", name="uq_participants_event_cpf"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(Integer, ForeignKey("registrations.id"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    name = Column(String(200), nullable=False)
    cpf = Column(String(11), nullable=False, index=True)
    birthdate = Column(Date, nullable=True)
    gender = Column(String(50), nullable=True)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=True)
    church_id = Column(Integer, ForeignKey("churches.id"), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Payment(Base):
    """
    Cobrança PIX de uma inscrição.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(Integer, ForeignKey("registrations.id"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="mercadopago")
    provider_payment_id = Column(String(100), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    pix_code = Column(Text, nullable=True)
    pix_qr_image = Column(Text, nullable=True)  # PNG em base64
    expires_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    receipt_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LedgerEntry(Base):
    """
    Planilha de inscritos usada pelos relatórios e pelo credenciamento.
    Desnormalizada: guarda nomes de igreja/distrito e status de pagamento.
    """
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    number = Column(Integer, nullable=False, unique=True)
    participant_id = Column(Integer, ForeignKey("participants.id"), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    birthdate = Column(Date, nullable=True)
    age = Column(Integer, nullable=False, default=0)
    church_name = Column(String(200), nullable=False, default="Nao informado")
    district_name = Column(String(200), nullable=False, default="Nao informado")
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
