"""
Criação da inscrição e da cobrança PIX.

Passos em sequência, sem desfazer os anteriores em caso de falha:
lote vigente → inscrição PENDING → participantes (+ planilha) → cobrança
PIX → pagamento → mensagens para o contato.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from .errors import ConfigurationError, DuplicateError, GatewayError, NoActiveRateTier, NotFoundError
from .normalizers import format_brl, parse_iso_date
from .registration_state import ParticipantData
from ..config import AppConfig
from ..infra.messaging_client import PIX_PAYMENT_PROMPT
from ..storage.models import Participant, PaymentStatus
from ..storage.repository import (
    DirectoryRepository,
    EventRepository,
    LedgerRepository,
    ParticipantRepository,
    PaymentRepository,
    RegistrationRepository,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

CPF_UNIQUE_CONSTRAINT = "uq_participants_event_cpf"


def is_duplicate_cpf_error(error: IntegrityError) -> bool:
    """
    Distingue a violação de CPF único no evento das demais (chave estrangeira, NOT NULL).
    O Postgres cita o nome da constraint; o SQLite cita as colunas.
    """
    message = str(getattr(error, "orig", error)).lower()
    if CPF_UNIQUE_CONSTRAINT in message:
        return True
    return "unique" in message and "participants.cpf" in message


@dataclass
class SettlementResult:
    registration_id: int
    event_name: str
    rate_tier_name: str
    unit_price: Decimal
    participant_count: int
    total: Decimal
    provider_payment_id: str
    payment_status: str
    pix_code: Optional[str]
    qr_code_base64: Optional[str]
    expires_at: Optional[datetime]


class SettlementPipeline:
    def __init__(
        self,
        db_session_factory: sessionmaker,
        payments,
        messaging,
        config: AppConfig,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._payments = payments
        self._messaging = messaging
        self._config = config

    def settle(
        self,
        event_id: int,
        contact_channel: Optional[str],
        participants: List[ParticipantData],
        payer_cpf: Optional[str] = None,
        payer_name: Optional[str] = None,
        today: Optional[date] = None,
    ) -> SettlementResult:
        """
        Cria inscrição, participantes e cobrança PIX e avisa o contato.

        Raises:
            NoActiveRateTier: sem lote vigente (nada é gravado)
            DuplicateError: CPF inscrito por outra conversa durante a coleta;
                os participantes já gravados permanecem e não há cobrança
            GatewayError: falha ao criar o PIX; a inscrição fica PENDING sem pagamento
        """
        if not participants:
            raise NotFoundError("Nenhum participante para inscrever")
        if len(participants) > self._config.max_participants:
            raise ConfigurationError(
                f"Limite de participantes excedido: count={len(participants)}, "
                f"max={self._config.max_participants}"
            )

        today = today or date.today()
        with self._db_session_factory() as db:
            events = EventRepository(db)
            event = events.get(event_id)
            if event is None:
                raise NotFoundError(
                    f"Evento não encontrado: event_id={event_id}",
                    user_message="Evento não encontrado. Envie *Inscrição* para começar novamente.",
                )

            tier = events.find_active_rate_tier(event_id, today)
            if tier is None:
                logger.error(f"Nenhum lote vigente: event_id={event_id}, date={today}")
                raise NoActiveRateTier(event_id)

            unit_price = Decimal(tier.price).quantize(CENTS, rounding=ROUND_HALF_UP)
            total = (unit_price * len(participants)).quantize(CENTS, rounding=ROUND_HALF_UP)
            if total <= 0:
                raise ConfigurationError(
                    f"Valor do lote inválido: rate_tier_id={tier.id}, price={tier.price}",
                    user_message="Valor do lote inválido. Fale com a organização.",
                )

            registration = RegistrationRepository(db).create_registration(
                event_id=event_id,
                total=total,
                contact_channel=contact_channel,
            )
            logger.info(
                f"Inscrição criada: registration_id={registration.id}, event_id={event_id}, "
                f"participants={len(participants)}, rate_tier={tier.name}, total={total}"
            )

            inserted = self._insert_participants(db, registration.id, event_id, participants)

            first = participants[0]
            payer_cpf = payer_cpf or first.cpf
            payer_name = payer_name or first.name
            try:
                charge = self._payments.create_pix_charge(
                    amount=total,
                    description=f"Inscricao {registration.id} - {event.name}",
                    payer_cpf=payer_cpf,
                    payer_name=payer_name,
                    idempotency_key=f"registration-{registration.id}",
                    metadata={
                        "registration_id": registration.id,
                        "event_id": event_id,
                        "participants": len(inserted),
                    },
                )
            except GatewayError as e:
                logger.error(
                    f"Falha ao gerar PIX: registration_id={registration.id}, error={e}"
                )
                raise GatewayError(
                    str(e),
                    user_message=(
                        "Erro ao gerar o PIX. Sua inscrição foi registrada, "
                        "mas o pagamento precisa ser feito com o suporte."
                    ),
                ) from e

            status = PaymentStatus.PAID.value if charge.approved else PaymentStatus.PENDING.value
            payment = PaymentRepository(db).create_payment(
                registration_id=registration.id,
                provider_payment_id=charge.provider_payment_id,
                status=status,
                pix_code=charge.pix_code,
                pix_qr_image=charge.qr_code_base64,
                expires_at=charge.expires_at,
            )
            if charge.approved:
                RegistrationRepository(db).mark_paid(registration.id)
                self._update_ledger_status(db, inserted, PaymentStatus.PAID.value)

            result = SettlementResult(
                registration_id=registration.id,
                event_name=event.name,
                rate_tier_name=tier.name,
                unit_price=unit_price,
                participant_count=len(participants),
                total=total,
                provider_payment_id=payment.provider_payment_id,
                payment_status=payment.status,
                pix_code=payment.pix_code,
                qr_code_base64=payment.pix_qr_image,
                expires_at=payment.expires_at,
            )

        if contact_channel:
            self._notify_charge(contact_channel, result)
        return result

    def _insert_participants(
        self,
        db: Session,
        registration_id: int,
        event_id: int,
        participants: List[ParticipantData],
    ) -> List[Participant]:
        directory = DirectoryRepository(db)
        repo = ParticipantRepository(db)
        inserted: List[Participant] = []
        try:
            for data in participants:
                try:
                    participant = repo.create_participant(
                        registration_id=registration_id,
                        event_id=event_id,
                        name=data.name,
                        cpf=data.cpf,
                        birthdate=parse_iso_date(data.birthdate),
                        gender=data.gender or None,
                        district_id=data.district_id or directory.find_district_id(data.district),
                        church_id=data.church_id or directory.find_church_id(data.church),
                        phone=data.phone or None,
                    )
                except IntegrityError as e:
                    if not is_duplicate_cpf_error(e):
                        raise
                    logger.warning(
                        f"CPF inscrito durante a coleta, abortando: "
                        f"registration_id={registration_id}, event_id={event_id}, cpf={data.cpf}"
                    )
                    raise DuplicateError(
                        f"CPF já inscrito no evento: event_id={event_id}, cpf={data.cpf}",
                        user_message=(
                            f"O CPF {data.cpf} foi inscrito neste evento por outro atendimento "
                            "antes da conclusão. A inscrição não foi finalizada."
                        ),
                    ) from e
                inserted.append(participant)
        finally:
            self._append_ledger(db, inserted)
        return inserted

    def _append_ledger(self, db: Session, participants: List[Participant]) -> None:
        try:
            LedgerRepository(db).append_participants(participants, PaymentStatus.PENDING.value)
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(
                f"Falha ao atualizar planilha de inscritos: participants={len(participants)}, "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )

    def _update_ledger_status(self, db: Session, participants: List[Participant], status: str) -> None:
        try:
            LedgerRepository(db).update_status([p.id for p in participants], status)
        except SQLAlchemyError as e:
            logger.error(
                f"Falha ao atualizar status na planilha: status={status}, "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )

    def _notify_charge(self, phone: str, result: SettlementResult) -> None:
        try:
            self._messaging.send_text(
                phone,
                "✅ Inscrição registrada!\n"
                f"Evento: {result.event_name}\n"
                f"Participantes: {result.participant_count}\n"
                f"Valor total: R$ {format_brl(result.total)}\n"
                f"Pague via PIX abaixo (válido por {self._config.pix_expiration_hours}h):",
            )
            send_pix_details(
                self._messaging,
                phone,
                result.qr_code_base64,
                result.pix_code,
                pause_seconds=self._config.pix_prompt_delay_ms / 1000.0,
            )
        except (GatewayError, ConfigurationError) as e:
            logger.error(
                f"Falha ao enviar PIX ao contato: registration_id={result.registration_id}, "
                f"error={type(e).__name__}: {e}"
            )


def send_pix_details(
    messaging,
    phone: str,
    qr_code_base64: Optional[str],
    pix_code: Optional[str],
    pause_seconds: float = 0.6,
) -> None:
    """
    QR Code, código copia e cola e as opções de pagamento, nessa ordem.
    """
    if qr_code_base64:
        messaging.send_image(phone, f"data:image/png;base64,{qr_code_base64}")
    if pix_code:
        messaging.send_text(phone, f"Copia e Cola PIX:\n{pix_code}")
    # Dá tempo do WhatsApp entregar o código antes dos botões
    if pause_seconds:
        time.sleep(pause_seconds)
    messaging.send_choice_prompt(phone, PIX_PAYMENT_PROMPT)
