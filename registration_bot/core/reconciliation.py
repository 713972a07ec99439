"""
Aplicação do webhook de pagamento do Mercado Pago.

O webhook pode chegar repetido e fora de ordem. O estado local só muda
via atualização condicional PENDING → PAID; quem não consegue aplicá-la
sai sem efeito, então comprovante e aviso são gerados uma única vez.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from .errors import ConfigurationError, GatewayError
from .receipts import render_receipt_pdf
from ..storage.models import PaymentStatus
from ..storage.repository import (
    EventRepository,
    LedgerRepository,
    ParticipantRepository,
    PaymentRepository,
    RegistrationRepository,
)

logger = logging.getLogger(__name__)

APPROVED = "approved"


class ReconciliationOutcome(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_PAID = "already_paid"
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    GATEWAY_ERROR = "gateway_error"


class PaymentReconciler:
    def __init__(
        self,
        db_session_factory: sessionmaker,
        payments,
        messaging,
        receipt_storage,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._payments = payments
        self._messaging = messaging
        self._receipt_storage = receipt_storage

    def reconcile(self, provider_payment_id: str) -> ReconciliationOutcome:
        provider_payment_id = str(provider_payment_id)
        try:
            remote = self._payments.fetch_payment(provider_payment_id)
        except (GatewayError, ConfigurationError) as e:
            logger.error(
                f"Falha ao consultar pagamento no Mercado Pago: "
                f"provider_payment_id={provider_payment_id}, error={e}"
            )
            return ReconciliationOutcome.GATEWAY_ERROR

        remote_status = remote.get("status")

        with self._db_session_factory() as db:
            payments = PaymentRepository(db)
            payment = payments.find_by_provider_id(provider_payment_id)
            if payment is None:
                logger.warning(
                    f"Pagamento do webhook não encontrado no banco: "
                    f"provider_payment_id={provider_payment_id}"
                )
                return ReconciliationOutcome.NOT_FOUND

            if payment.status == PaymentStatus.PAID.value:
                logger.info(
                    f"Pagamento já estava pago, ignorando webhook: "
                    f"provider_payment_id={provider_payment_id}"
                )
                return ReconciliationOutcome.ALREADY_PAID

            if remote_status != APPROVED:
                logger.info(
                    f"Webhook sem aprovação: provider_payment_id={provider_payment_id}, "
                    f"status={remote_status}"
                )
                return ReconciliationOutcome.UNCHANGED

            paid_at = datetime.utcnow()
            if not payments.mark_paid_if_pending(payment.id, paid_at):
                logger.info(
                    f"Outro webhook já aplicou o pagamento: provider_payment_id={provider_payment_id}"
                )
                return ReconciliationOutcome.ALREADY_PAID

            registration_id = payment.registration_id
            registrations = RegistrationRepository(db)
            registrations.mark_paid(registration_id)
            registration = registrations.get(registration_id)
            participants = ParticipantRepository(db).list_for_registration(registration_id)
            try:
                LedgerRepository(db).update_status(
                    [p.id for p in participants], PaymentStatus.PAID.value
                )
            except SQLAlchemyError as e:
                logger.error(
                    f"Falha ao atualizar planilha de inscritos: registration_id={registration_id}, "
                    f"error={type(e).__name__}: {e}",
                    exc_info=True,
                )

            event = EventRepository(db).get(registration.event_id)
            logger.info(
                f"Pagamento aprovado: provider_payment_id={provider_payment_id}, "
                f"registration_id={registration_id}, participants={len(participants)}"
            )

            receipt_url = self._store_receipt(
                registration_id=registration_id,
                provider_payment_id=provider_payment_id,
                event_name=event.name if event else "Evento",
                participant_names=[p.name for p in participants],
                total=registration.total,
                paid_at=paid_at,
            )
            if receipt_url:
                payments.set_receipt_url(payment.id, receipt_url)
            contact = registration.contact_channel

        if contact:
            self._notify_paid(contact, receipt_url)
        return ReconciliationOutcome.APPLIED

    def _store_receipt(self, registration_id: int, provider_payment_id: str, **receipt) -> Optional[str]:
        key = f"{registration_id}/receipt-{provider_payment_id}.pdf"
        try:
            pdf_bytes = render_receipt_pdf(provider_payment_id=provider_payment_id, **receipt)
            return self._receipt_storage.store(key, pdf_bytes)
        except Exception as e:
            # Pagamento já está aplicado; comprovante pode ser regerado depois
            logger.error(
                f"Falha ao gerar/salvar comprovante: key={key}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            return None

    def _notify_paid(self, phone: str, receipt_url: Optional[str]) -> None:
        try:
            self._messaging.send_text(phone, "🎉 Pagamento aprovado! Sua inscrição foi confirmada.")
            if receipt_url:
                self._messaging.send_text(phone, f"Comprovante: {receipt_url}")
        except (GatewayError, ConfigurationError) as e:
            logger.error(f"Falha ao avisar pagamento aprovado: error={type(e).__name__}: {e}")
