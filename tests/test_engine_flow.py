from decimal import Decimal
from itertools import count

import pytest

from conftest import CPF_ANA, CPF_JOAO, CPF_MARIA, PHONE, PIX_CODE, participant_message
from registration_bot.core.errors import DuplicateError, ValidationError
from registration_bot.core.registration_manager import DUPLICATE_CPF, INVALID_CPF, MENU_TEXT
from registration_bot.core.registration_state import ConversationStep
from registration_bot.storage import models


class Conversation:
    """Envia mensagens com ids únicos, como a Z-API faria."""

    def __init__(self, engine, phone=PHONE):
        self.engine = engine
        self.phone = phone
        self._ids = count(1)

    def send(self, text):
        return self.engine.handle_message(self.phone, f"msg-{next(self._ids)}", text)

    def step(self):
        return self.engine.get_session_snapshot(self.phone)["step"]


@pytest.fixture
def chat(engine):
    return Conversation(engine)


def register_one(chat, name, cpf):
    """Inscrição completa de um participante: distrito Norte, Igreja Central."""
    chat.send("Quero me inscrever")
    chat.send("1")
    chat.send(participant_message(name, cpf))
    chat.send("1")
    chat.send("1")


class TestMenu:
    def test_greeting_shows_menu(self, chat, messaging):
        result = chat.send("oi")
        assert result == {"phone": PHONE, "step": "menu", "duplicate": False}
        assert messaging.last_text() == MENU_TEXT

    def test_invalid_menu_option_keeps_state(self, chat, messaging):
        chat.send("oi")
        chat.send("9")
        assert chat.step() == "menu"
        assert "Opção inválida" in messaging.last_text()

    def test_support_option_resets(self, chat, messaging, config):
        chat.send("oi")
        chat.send("4")
        assert chat.step() == "idle"
        assert messaging.last_text() == config.support_contact

    def test_cancel_from_any_state(self, chat, messaging):
        chat.send("Inscrição")
        assert chat.step() == "quantity"
        chat.send("cancelar")
        assert chat.step() == "idle"
        assert "Sessão reiniciada" in messaging.last_text()

    def test_support_keeps_state(self, chat, messaging, config):
        chat.send("Inscrição")
        chat.send("suporte")
        assert chat.step() == "quantity"
        assert messaging.last_text() == config.support_contact

    def test_phone_is_normalized(self, engine):
        result = engine.handle_message("(91) 98888-7777", "m1", "oi")
        assert result["phone"] == PHONE


class TestDeduplication:
    def test_redelivered_message_is_ignored(self, engine, messaging):
        engine.handle_message(PHONE, "wamid-1", "Inscrição")
        sent = len(messaging.texts)

        result = engine.handle_message(PHONE, "wamid-1", "Inscrição")

        assert result["duplicate"] is True
        assert result["step"] == "quantity"
        assert len(messaging.texts) == sent

    def test_message_without_id_is_processed(self, engine):
        engine.handle_message(PHONE, None, "oi")
        result = engine.handle_message(PHONE, None, "1")
        assert result["duplicate"] is False
        assert result["step"] == "quantity"


class TestRegistrationFlow:
    def test_two_participants(self, chat, messaging, payments, db_factory, catalog):
        chat.send("Quero me inscrever")
        assert chat.step() == "quantity"

        chat.send("2")
        assert chat.step() == "collecting_participant"

        chat.send(participant_message("Maria Souza", CPF_MARIA))
        assert chat.step() == "selecting_district"
        assert "1. Distrito Norte" in messaging.last_text()

        chat.send("1")
        assert chat.step() == "selecting_church"
        assert "1. Igreja Central" in messaging.last_text()
        assert "Esperança" not in messaging.last_text()

        chat.send("1")
        assert chat.step() == "collecting_participant"
        assert "Participante 2" in messaging.last_text()

        chat.send(participant_message("João Lima", CPF_JOAO))
        chat.send("0")
        assert chat.step() == "selecting_church"
        chat.send("0")

        assert chat.step() == "idle"
        assert len(payments.charges) == 1
        assert payments.charges[0]["amount"] == Decimal("300.00")
        assert payments.charges[0]["payer_cpf"] == CPF_MARIA
        assert "Valor total: R$ 300,00" in messaging.all_text()
        assert f"Copia e Cola PIX:\n{PIX_CODE}" in messaging.all_text()
        assert len(messaging.images) == 1
        assert len(messaging.prompts) == 1

        with db_factory() as db:
            registration = db.query(models.Registration).one()
            assert registration.total == Decimal("300.00")
            assert registration.contact_channel == PHONE
            assert registration.status == "PENDING"

            participants = db.query(models.Participant).order_by(models.Participant.id).all()
            assert [p.cpf for p in participants] == [CPF_MARIA, CPF_JOAO]
            assert participants[0].district_id == catalog["norte_id"]
            assert participants[1].district_id is None

            ledger = db.query(models.LedgerEntry).order_by(models.LedgerEntry.number).all()
            assert [entry.number for entry in ledger] == [1, 2]
            assert ledger[0].church_name == "Igreja Central"
            assert ledger[1].church_name == "Nao informado"
            assert ledger[1].district_name == "Nao informado"
            assert all(entry.payment_status == "PENDING" for entry in ledger)

    def test_duplicate_in_batch_is_skipped_and_not_charged(self, chat, messaging, payments):
        chat.send("Inscrição")
        chat.send("2")
        chat.send(participant_message("Maria Souza", CPF_MARIA))
        chat.send("1")
        chat.send("1")

        chat.send(participant_message("Maria de Novo", CPF_MARIA))

        assert DUPLICATE_CPF in messaging.all_text()
        assert chat.step() == "idle"
        assert payments.charges[0]["amount"] == Decimal("150.00")

    def test_persisted_duplicate_in_batch_of_two(self, chat, messaging, payments, db_factory):
        register_one(chat, "Ana Lima", CPF_ANA)

        chat.send("Inscrição")
        chat.send("2")
        chat.send(participant_message("Maria Souza", CPF_MARIA))
        chat.send("1")
        chat.send("1")
        chat.send(participant_message("Ana Lima", CPF_ANA))

        assert DUPLICATE_CPF in messaging.all_text()
        assert chat.step() == "idle"
        assert len(payments.charges) == 2
        assert payments.charges[-1]["amount"] == Decimal("150.00")
        with db_factory() as db:
            assert db.query(models.Participant).count() == 2
            latest = db.query(models.Registration).order_by(models.Registration.id.desc()).first()
            assert latest.total == Decimal("150.00")
            added = db.query(models.Participant).filter_by(registration_id=latest.id).all()
            assert [p.cpf for p in added] == [CPF_MARIA]

    def test_total_unaffected_by_reprompts(self, chat, messaging, payments, db_factory):
        chat.send("Inscrição")
        chat.send("2")

        chat.send(participant_message("Maria Souza", "52998224724"))
        assert messaging.last_text() == INVALID_CPF
        chat.send(participant_message("Maria Souza", CPF_MARIA, birthdate="31/02/2001"))
        assert "Data de nascimento inválida" in messaging.last_text()
        chat.send(participant_message("Maria Souza", CPF_MARIA))
        assert chat.step() == "selecting_district"

        chat.send("9")
        assert chat.step() == "selecting_district"
        assert "Opção inválida" in messaging.last_text()
        chat.send("1")
        chat.send("1")

        chat.send(participant_message("João Lima", CPF_JOAO))
        chat.send("5")
        assert chat.step() == "selecting_district"
        chat.send("2")
        assert "1. Igreja Esperança" in messaging.last_text()
        chat.send("1")

        assert chat.step() == "idle"
        assert len(payments.charges) == 1
        assert payments.charges[0]["amount"] == Decimal("300.00")
        with db_factory() as db:
            assert db.query(models.Registration).one().total == Decimal("300.00")
            assert db.query(models.Participant).count() == 2

    def test_cpf_already_registered_for_event(self, chat, messaging, payments):
        register_one(chat, "Maria Souza", CPF_MARIA)
        assert len(payments.charges) == 1

        chat.send("Inscrição")
        chat.send("1")
        chat.send(participant_message("Maria Souza", CPF_MARIA))

        assert DUPLICATE_CPF in messaging.all_text()
        assert "Nenhum participante válido" in messaging.last_text()
        assert chat.step() == "idle"
        assert len(payments.charges) == 1

    def test_invalid_cpf_asks_again(self, chat, messaging):
        chat.send("Inscrição")
        chat.send("1")
        chat.send(participant_message("Maria Souza", "52998224724"))
        assert chat.step() == "collecting_participant"
        assert messaging.last_text() == INVALID_CPF

    def test_invalid_birthdate_asks_again(self, chat, messaging):
        chat.send("Inscrição")
        chat.send("1")
        chat.send(participant_message("Maria Souza", CPF_MARIA, birthdate="31/02/2001"))
        assert chat.step() == "collecting_participant"
        assert "Data de nascimento inválida" in messaging.last_text()

    def test_unparseable_participant(self, chat, messaging):
        chat.send("Inscrição")
        chat.send("1")
        chat.send("Maria Souza 52998224725")
        assert chat.step() == "collecting_participant"
        assert "Não consegui entender" in messaging.last_text()

    def test_invalid_quantity(self, chat, messaging):
        chat.send("Inscrição")
        chat.send("muitos")
        assert chat.step() == "quantity"
        assert "número válido" in messaging.last_text()

    def test_gateway_failure_reports_support(self, chat, messaging, payments, config, db_factory):
        payments.fail_create = True
        register_one(chat, "Maria Souza", CPF_MARIA)

        assert chat.step() == "idle"
        assert "Erro ao gerar o PIX" in messaging.last_text()
        assert config.support_contact in messaging.last_text()
        with db_factory() as db:
            assert db.query(models.Registration).count() == 1
            assert db.query(models.Payment).count() == 0

    def test_messaging_failure_still_advances(self, chat, messaging):
        chat.send("Inscrição")
        messaging.fail = True
        result = chat.send("2")
        assert result["step"] == "collecting_participant"
        assert chat.step() == "collecting_participant"


class TestMultipleEvents:
    def test_event_selection(self, chat, messaging, db_factory, catalog):
        with db_factory() as db:
            db.add(models.Event(name="Acampamento 2026", status="active"))
            db.commit()

        chat.send("Inscrição")
        assert chat.step() == "selecting_event"
        assert "1. Acampamento 2026" in messaging.last_text()

        chat.send("5")
        assert chat.step() == "selecting_event"

        chat.send("2")
        snapshot = chat.engine.get_session_snapshot(PHONE)
        assert snapshot["step"] == "quantity"
        assert snapshot["context"] == {"event_id": catalog["event_id"]}

    def test_no_active_events(self, chat, messaging, db_factory):
        with db_factory() as db:
            db.query(models.Event).update({models.Event.status: "closed"})
            db.commit()

        chat.send("Inscrição")
        assert chat.step() == "idle"
        assert messaging.last_text() == "Nenhum evento ativo no momento."


class TestConsultation:
    def test_registration_found(self, chat, messaging):
        register_one(chat, "Maria Souza", CPF_MARIA)

        chat.send("2")
        assert chat.step() == "consulting_registration"
        chat.send("529.982.247-25")

        assert chat.step() == "idle"
        text = messaging.last_text()
        assert "INSCRIÇÃO ENCONTRADA" in text
        assert "Maria Souza" in text
        assert "Congresso Jovem 2026" in text
        assert "PENDING" in text

    def test_registration_not_found(self, chat, messaging):
        chat.send("consultar inscrição")
        chat.send(CPF_ANA)
        assert messaging.last_text() == "❌ Nenhuma inscrição encontrada para esse CPF."

    def test_invalid_cpf_keeps_state(self, chat, messaging):
        chat.send("consultar inscrição")
        chat.send("123")
        assert chat.step() == "consulting_registration"
        assert messaging.last_text() == INVALID_CPF

    def test_pending_pix_resent(self, chat, messaging):
        register_one(chat, "Maria Souza", CPF_MARIA)
        images_before = len(messaging.images)

        chat.send("Consultar PIX")
        assert chat.step() == "consulting_pending_payment"
        chat.send(CPF_MARIA)

        assert chat.step() == "idle"
        assert "Valor: R$ 150,00" in messaging.all_text()
        assert "Validade: 20/10/2026 12:00" in messaging.all_text()
        assert len(messaging.images) == images_before + 1
        assert messaging.last_text() == f"Copia e Cola PIX:\n{PIX_CODE}"

    def test_pending_pix_not_found(self, chat, messaging):
        chat.send("meu pix")
        chat.send(CPF_ANA)
        assert messaging.last_text() == "Não encontrei PIX pendente para esse CPF."


class TestPixShortcuts:
    def test_copy_by_contact(self, chat, messaging):
        register_one(chat, "Maria Souza", CPF_MARIA)
        prompts_before = len(messaging.prompts)

        chat.send("Copiar PIX")

        assert messaging.last_text() == f"Copia e Cola PIX:\n{PIX_CODE}"
        assert len(messaging.prompts) == prompts_before + 1

    def test_qr_by_contact(self, chat, messaging):
        register_one(chat, "Maria Souza", CPF_MARIA)
        images_before = len(messaging.images)

        chat.send("pix_qr")

        assert len(messaging.images) == images_before + 1

    def test_copy_without_pending_payment(self, chat, messaging):
        chat.send("Copiar PIX")
        assert messaging.last_text() == "Não encontrei o código PIX copia e cola."

    def test_paid_confirmation(self, chat, messaging):
        chat.send("Já paguei")
        assert "Assim que o Mercado Pago aprovar" in messaging.last_text()


class TestPublicRegistration:
    def test_creates_registration(self, engine, payments, messaging, catalog):
        result = engine.register_public(
            event_id=catalog["event_id"],
            payer_cpf="529.982.247-25",
            participants=[
                {"name": "Maria Souza", "cpf": CPF_MARIA, "birthdate": "15/03/2001"},
                {"name": "Ana Lima", "cpf": CPF_ANA, "district": "Sul", "church": "Esperança"},
            ],
        )
        assert result.total == Decimal("300.00")
        assert result.participant_count == 2
        assert result.pix_code == PIX_CODE
        assert payments.charges[0]["payer_cpf"] == CPF_MARIA
        # Sem WhatsApp informado, nada é enviado
        assert messaging.texts == []

    def test_names_resolve_to_directory(self, engine, db_factory, catalog):
        engine.register_public(
            event_id=catalog["event_id"],
            payer_cpf=CPF_ANA,
            participants=[{"name": "Ana Lima", "cpf": CPF_ANA, "district": "Sul", "church": "Esperança"}],
        )
        with db_factory() as db:
            participant = db.query(models.Participant).one()
            assert participant.district_id == catalog["sul_id"]
            assert participant.church_id is not None

    def test_notifies_whatsapp(self, engine, messaging, catalog):
        engine.register_public(
            event_id=catalog["event_id"],
            payer_cpf=CPF_MARIA,
            participants=[{"name": "Maria Souza", "cpf": CPF_MARIA}],
            whatsapp="(91) 98888-7777",
        )
        assert messaging.texts[0][0] == PHONE
        assert len(messaging.prompts) == 1

    def test_invalid_payer_cpf(self, engine, catalog):
        with pytest.raises(ValidationError):
            engine.register_public(
                event_id=catalog["event_id"],
                payer_cpf="123",
                participants=[{"name": "Maria Souza", "cpf": CPF_MARIA}],
            )

    def test_invalid_birthdate(self, engine, catalog):
        with pytest.raises(ValidationError):
            engine.register_public(
                event_id=catalog["event_id"],
                payer_cpf=CPF_MARIA,
                participants=[{"name": "Maria Souza", "cpf": CPF_MARIA, "birthdate": "99/99/2001"}],
            )

    def test_repeated_cpf_in_submission(self, engine, payments, catalog):
        with pytest.raises(DuplicateError):
            engine.register_public(
                event_id=catalog["event_id"],
                payer_cpf=CPF_MARIA,
                participants=[
                    {"name": "Maria Souza", "cpf": CPF_MARIA},
                    {"name": "Maria Souza", "cpf": "529.982.247-25"},
                ],
            )
        assert payments.charges == []

    def test_cpf_already_registered(self, engine, payments, catalog):
        engine.register_public(
            event_id=catalog["event_id"],
            payer_cpf=CPF_MARIA,
            participants=[{"name": "Maria Souza", "cpf": CPF_MARIA}],
        )
        with pytest.raises(DuplicateError):
            engine.register_public(
                event_id=catalog["event_id"],
                payer_cpf=CPF_JOAO,
                participants=[{"name": "Maria Souza", "cpf": CPF_MARIA}],
            )
        assert len(payments.charges) == 1


class TestHealth:
    def test_healthy_without_redis(self, engine):
        assert engine.health() == {"status": "healthy", "database": "ok", "redis": "disabled"}


def test_unexpected_error_resets_session(engine, chat, monkeypatch):
    chat.send("Inscrição")

    def boom(state, text):
        raise RuntimeError("falha inesperada")

    monkeypatch.setattr(engine._registration_manager, "handle_message", boom)
    result = chat.send("2")

    assert result["step"] == ConversationStep.IDLE.value
