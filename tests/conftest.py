from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from registration_bot.config import AppConfig
from registration_bot.core.engine import ConversationEngine
from registration_bot.core.errors import GatewayError
from registration_bot.core.session_manager import InMemorySessionManager
from registration_bot.infra.payment_gateway import PixCharge
from registration_bot.infra.receipt_storage import LocalReceiptStorage
from registration_bot.storage import models
from registration_bot.storage.database import Base

# CPFs com dígitos verificadores válidos
CPF_MARIA = "52998224725"
CPF_JOAO = "11144477735"
CPF_ANA = "12345678909"
CPF_PEDRO = "98765432100"

PHONE = "5591988887777"

PIX_CODE = "00020126580014br.gov.bcb.pix0136teste5204000053039865802BR"
QR_BASE64 = "iVBORw0KGgoAAAANSUhEUg=="


def participant_message(name: str, cpf: str, birthdate: str = "15/03/2001") -> str:
    return (
        f"Nome: {name}\n"
        f"CPF: {cpf}\n"
        f"Data de Nascimento: {birthdate}\n"
        "Gênero: Feminino\n"
        "Telefone: (91) 98888-7777"
    )


class FakeMessaging:
    """Registra os envios em vez de chamar a Z-API."""

    def __init__(self) -> None:
        self.texts: List[tuple] = []
        self.images: List[tuple] = []
        self.prompts: List[tuple] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise GatewayError("Z-API indisponível")

    def send_text(self, phone, message):
        self._check()
        self.texts.append((phone, message))
        return {}

    def send_image(self, phone, image, caption=None):
        self._check()
        self.images.append((phone, image))
        return {}

    def send_choice_prompt(self, phone, prompt):
        self._check()
        self.prompts.append((phone, prompt))
        return "button_list"

    def last_text(self) -> str:
        return self.texts[-1][1] if self.texts else ""

    def all_text(self) -> str:
        return "\n".join(message for _, message in self.texts)


class FakePayments:
    """Gateway de pagamento em memória."""

    def __init__(self) -> None:
        self.charges: List[dict] = []
        self.status = "pending"
        self.remote_status = "approved"
        self.fail_create = False
        self.fail_fetch = False

    def create_pix_charge(self, **kwargs):
        if self.fail_create:
            raise GatewayError("Mercado Pago falhou: operation=create_pix_charge, status=500")
        self.charges.append(kwargs)
        return PixCharge(
            provider_payment_id=f"mp-{len(self.charges)}",
            status=self.status,
            pix_code=PIX_CODE,
            qr_code_base64=QR_BASE64,
            expires_at=datetime(2026, 10, 20, 15, 0),
        )

    def fetch_payment(self, provider_payment_id):
        if self.fail_fetch:
            raise GatewayError("Mercado Pago falhou: operation=fetch_payment, status=503")
        return {"id": provider_payment_id, "status": self.remote_status}


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        database_url="sqlite://",
        pix_prompt_delay_ms=0,
        receipts_dir=str(tmp_path / "receipts"),
        receipts_public_base_url="http://testserver/receipts",
        support_contact="Suporte: (91) 99999-0000",
    )


@pytest.fixture
def db_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def catalog(db_factory):
    """Um evento com lote vigente, dois distritos e duas igrejas."""
    today = date.today()
    with db_factory() as db:
        event = models.Event(name="Congresso Jovem 2026", slug="congresso-jovem-2026", status="active")
        db.add(event)
        db.flush()
        db.add(models.RateTier(
            event_id=event.id,
            name="Lote 1",
            price=Decimal("150.00"),
            starts_on=today - timedelta(days=30),
            ends_on=today + timedelta(days=30),
            status="active",
        ))
        norte = models.District(name="Distrito Norte")
        sul = models.District(name="Distrito Sul")
        db.add_all([norte, sul])
        db.flush()
        db.add_all([
            models.Church(name="Igreja Central", district_id=norte.id),
            models.Church(name="Igreja Esperança", district_id=sul.id),
        ])
        db.commit()
        return {"event_id": event.id, "norte_id": norte.id, "sul_id": sul.id}


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def receipt_storage(config):
    return LocalReceiptStorage(config.receipts_dir, config.receipts_public_base_url)


@pytest.fixture
def engine(config, db_factory, catalog, messaging, payments, receipt_storage):
    return ConversationEngine(
        config=config,
        sessions=InMemorySessionManager(),
        db_session_factory=db_factory,
        messaging=messaging,
        payments=payments,
        receipt_storage=receipt_storage,
    )
