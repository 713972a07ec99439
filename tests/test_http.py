import hashlib
import hmac
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from conftest import CPF_ANA, CPF_MARIA, PHONE
from registration_bot.api.http import create_app, extract_whatsapp_message, hash_number
from registration_bot.core.errors import NoActiveRateTier
from registration_bot.core.reconciliation import ReconciliationOutcome
from registration_bot.storage import models


@pytest.fixture
def client(config, engine):
    return TestClient(create_app(config=config, engine=engine))


class TestExtractWhatsappMessage:
    def test_root_fields(self):
        message = extract_whatsapp_message(
            {"phone": "5591988887777", "messageId": "ABC", "fromMe": False, "text": {"message": "Oi"}}
        )
        assert message == {"phone": "5591988887777", "message_id": "ABC", "text": "Oi"}

    def test_nested_data(self):
        message = extract_whatsapp_message(
            {"data": {"phone": "5591988887777", "messageId": "X1", "text": {"message": "menu"}}}
        )
        assert message["phone"] == "5591988887777"
        assert message["message_id"] == "X1"
        assert message["text"] == "menu"

    def test_sender_phone_and_momment_id(self):
        message = extract_whatsapp_message(
            {"sender": {"phone": "5591988887777"}, "momment": 1700000000, "text": "oi"}
        )
        assert message["phone"] == "5591988887777"
        assert message["message_id"] == "1700000000"

    def test_id_fallback_before_timestamp(self):
        message = extract_whatsapp_message(
            {"phone": "5591988887777", "id": "Z1", "momment": 1700000000, "text": "oi"}
        )
        assert message["message_id"] == "Z1"

        nested = extract_whatsapp_message(
            {"data": {"phone": "5591988887777", "id": "Z2", "momment": 1700000000, "text": "oi"}}
        )
        assert nested["message_id"] == "Z2"

    def test_button_reply_uses_label(self):
        message = extract_whatsapp_message({
            "phone": "5591988887777",
            "messageId": "B1",
            "buttonsResponseMessage": {"buttonId": "1", "message": "Copiar PIX"},
        })
        assert message["text"] == "Copiar PIX"

    def test_from_me_is_ignored(self):
        assert extract_whatsapp_message({"phone": "1", "fromMe": True, "text": {"message": "x"}}) is None

    def test_without_phone(self):
        assert extract_whatsapp_message({"text": {"message": "x"}}) is None
        assert extract_whatsapp_message(["nao", "e", "dict"]) is None


def test_hash_number():
    assert hash_number("5511999999999") == "5511****9999"
    assert hash_number("123") == "****"


class TestWhatsappWebhook:
    def test_message_advances_conversation(self, client, engine):
        response = client.post(
            "/whatsapp/webhook",
            json={"phone": PHONE, "messageId": "m1", "text": {"message": "oi"}},
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert response.headers["X-Request-ID"]
        assert engine.get_session_snapshot(PHONE)["step"] == "menu"

    def test_ignored_payload_still_acknowledged(self, client, messaging):
        response = client.post("/whatsapp/webhook", json={"fromMe": True, "phone": PHONE})
        assert response.json() == {"ok": True}
        assert messaging.texts == []

    def test_invalid_json_acknowledged(self, client):
        response = client.post(
            "/whatsapp/webhook",
            content=b"nao-e-json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 200

    def test_secret_required_when_configured(self, config, engine):
        client = TestClient(create_app(config=replace(config, whatsapp_webhook_secret="s3"), engine=engine))
        payload = {"phone": PHONE, "messageId": "m1", "text": {"message": "oi"}}

        assert client.post("/whatsapp/webhook", json=payload).status_code == 401
        assert client.post(
            "/whatsapp/webhook", json=payload, headers={"x-whatsapp-webhook-secret": "errado"}
        ).status_code == 401
        assert client.post(
            "/whatsapp/webhook", json=payload, headers={"x-whatsapp-webhook-secret": "s3"}
        ).status_code == 200


class TestMercadoPagoWebhook:
    @pytest.fixture
    def mock_engine(self):
        engine = Mock()
        engine.reconcile_payment.return_value = ReconciliationOutcome.APPLIED
        return engine

    def test_id_from_body(self, config, mock_engine):
        client = TestClient(create_app(config=config, engine=mock_engine))
        response = client.post(
            "/payments/mercadopago/webhook",
            json={"type": "payment", "data": {"id": "123"}},
        )
        assert response.json() == {"ok": True}
        mock_engine.reconcile_payment.assert_called_once_with("123")

    def test_id_from_query(self, config, mock_engine):
        client = TestClient(create_app(config=config, engine=mock_engine))
        client.post("/payments/mercadopago/webhook?type=payment&data.id=456")
        mock_engine.reconcile_payment.assert_called_once_with("456")

    def test_without_id(self, config, mock_engine):
        client = TestClient(create_app(config=config, engine=mock_engine))
        response = client.post("/payments/mercadopago/webhook", json={"action": "test"})
        assert response.status_code == 200
        mock_engine.reconcile_payment.assert_not_called()

    def test_signature_checked_when_secret_configured(self, config, mock_engine):
        secret = "segredo"
        client = TestClient(create_app(config=replace(config, mercadopago_webhook_secret=secret), engine=mock_engine))
        manifest = "id:123;request-id:req-1;ts:1700000000;"
        v1 = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()

        bad = client.post(
            "/payments/mercadopago/webhook?data.id=123",
            json={"data": {"id": "123"}},
            headers={"x-signature": "ts=1700000000,v1=errado", "x-request-id": "req-1"},
        )
        assert bad.status_code == 200
        assert bad.json() == {"ok": True}
        mock_engine.reconcile_payment.assert_not_called()

        good = client.post(
            "/payments/mercadopago/webhook?data.id=123",
            json={"data": {"id": "123"}},
            headers={"x-signature": f"ts=1700000000,v1={v1}", "x-request-id": "req-1"},
        )
        assert good.status_code == 200
        mock_engine.reconcile_payment.assert_called_once_with("123")


class TestPublicRegistration:
    def test_created(self, client, catalog):
        response = client.post("/public/registrations", json={
            "event_id": catalog["event_id"],
            "payer_cpf": "529.982.247-25",
            "participants": [
                {"name": "Maria Souza", "cpf": CPF_MARIA},
                {"name": "Ana Lima", "cpf": CPF_ANA},
            ],
        })
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 300.0
        assert body["participants"] == 2
        assert body["rate_tier"] == "Lote 1"
        assert body["payment_status"] == "PENDING"

    def test_duplicate_cpf(self, client, catalog):
        payload = {
            "event_id": catalog["event_id"],
            "payer_cpf": CPF_MARIA,
            "participants": [{"name": "Maria Souza", "cpf": CPF_MARIA}],
        }
        assert client.post("/public/registrations", json=payload).status_code == 200
        response = client.post("/public/registrations", json=payload)
        assert response.status_code == 409
        assert CPF_MARIA in response.json()["detail"]

    def test_invalid_cpf(self, client, catalog):
        response = client.post("/public/registrations", json={
            "event_id": catalog["event_id"],
            "payer_cpf": "111.111.111-11",
            "participants": [{"name": "Maria Souza", "cpf": CPF_MARIA}],
        })
        assert response.status_code == 400

    def test_unknown_church(self, client, catalog, db_factory):
        response = client.post("/public/registrations", json={
            "event_id": catalog["event_id"],
            "payer_cpf": CPF_MARIA,
            "participants": [{"name": "Maria Souza", "cpf": CPF_MARIA, "church_id": 999}],
        })
        assert response.status_code == 400
        assert "igreja" in response.json()["detail"]
        with db_factory() as db:
            assert db.query(models.Registration).count() == 0

    def test_unknown_event(self, client):
        response = client.post("/public/registrations", json={
            "event_id": 999,
            "payer_cpf": CPF_MARIA,
            "participants": [{"name": "Maria Souza", "cpf": CPF_MARIA}],
        })
        assert response.status_code == 404

    def test_no_active_rate_tier(self, config):
        engine = Mock()
        engine.register_public.side_effect = NoActiveRateTier(1)
        client = TestClient(create_app(config=config, engine=engine))
        response = client.post("/public/registrations", json={
            "event_id": 1,
            "payer_cpf": CPF_MARIA,
            "participants": [{"name": "Maria Souza", "cpf": CPF_MARIA}],
        })
        assert response.status_code == 422
        assert "lote vigente" in response.json()["detail"]

    def test_schema_validation(self, client):
        response = client.post("/public/registrations", json={"event_id": 1})
        assert response.status_code == 422


class TestPublicEvent:
    def test_by_slug(self, client, catalog, db_factory):
        today = date.today()
        with db_factory() as db:
            db.add(models.RateTier(
                event_id=catalog["event_id"],
                name="Lote 2",
                price=Decimal("180.00"),
                starts_on=today + timedelta(days=31),
                ends_on=today + timedelta(days=60),
                status="active",
            ))
            db.commit()

        response = client.get("/public/events/congresso-jovem-2026")
        assert response.status_code == 200
        body = response.json()
        assert body["event"]["id"] == catalog["event_id"]
        assert body["rate_tier"]["name"] == "Lote 1"
        assert body["rate_tier"]["price"] == 150.0
        assert body["next_rate_tier"]["name"] == "Lote 2"
        assert [d["name"] for d in body["districts"]] == ["Distrito Norte", "Distrito Sul"]
        churches = {c["name"]: c["district_id"] for c in body["churches"]}
        assert churches == {"Igreja Central": catalog["norte_id"], "Igreja Esperança": catalog["sul_id"]}

    def test_by_name_or_id(self, client, catalog):
        by_name = client.get("/public/events/Congresso Jovem 2026")
        assert by_name.json()["event"]["id"] == catalog["event_id"]
        by_id = client.get(f"/public/events/{catalog['event_id']}")
        assert by_id.json()["event"]["slug"] == "congresso-jovem-2026"

    def test_without_next_tier(self, client, catalog):
        assert client.get("/public/events/congresso-jovem-2026").json()["next_rate_tier"] is None

    def test_unknown_slug(self, client, catalog):
        response = client.get("/public/events/nao-existe")
        assert response.status_code == 404
        assert response.json()["detail"] == "Evento não encontrado."


class TestSessionsEndpoint:
    def test_snapshot(self, client, engine):
        engine.handle_message(PHONE, "m1", "Inscrição")
        response = client.get("/sessions/(91) 98888-7777")
        assert response.status_code == 200
        assert response.json()["step"] == "quantity"
        assert response.json()["phone"] == PHONE

    def test_api_key_required_when_configured(self, config, engine):
        client = TestClient(create_app(config=replace(config, bot_api_key="chave"), engine=engine))
        assert client.get(f"/sessions/{PHONE}").status_code == 401
        assert client.get(f"/sessions/{PHONE}", headers={"X-API-KEY": "chave"}).status_code == 200

    def test_api_key_always_required_in_prod(self, config, engine):
        client = TestClient(create_app(config=replace(config, env="prod"), engine=engine))
        assert client.get(f"/sessions/{PHONE}").status_code == 401


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "ok", "redis": "disabled"}
