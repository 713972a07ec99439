import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from .models import (
    Church,
    District,
    Event,
    LedgerEntry,
    Participant,
    Payment,
    PaymentStatus,
    RateTier,
    Registration,
)
from ..core.normalizers import calculate_age, slug_key

logger = logging.getLogger(__name__)


class _Repository:
    def __init__(self, db: Session) -> None:
        self._db = db

    def _commit(self, action: str, **log_fields) -> None:
        """
        Commit com o tratamento de erro padrão: loga, faz rollback e relança.
        """
        fields = ", ".join(f"{key}={value}" for key, value in log_fields.items())
        try:
            self._db.commit()
        except IntegrityError as e:
            logger.error(
                f"Erro de integridade ao {action}: {fields}, "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )
            self._db.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error(
                f"Erro de banco de dados ao {action}: {fields}, "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )
            self._db.rollback()
            raise


class EventRepository(_Repository):
    """
    Consultas de eventos e lotes (somente leitura).
    """

    def list_active(self, limit: int = 20) -> List[Event]:
        return (
            self._db.query(Event)
            .filter(Event.status == "active")
            .order_by(Event.name.asc())
            .limit(limit)
            .all()
        )

    def get(self, event_id: int) -> Optional[Event]:
        return self._db.get(Event, event_id)

    def find_by_slug(self, slug: str) -> Optional[Event]:
        """
        Resolve o evento pelo slug exato, pelo id numérico ou, por último,
        comparando a forma normalizada com o slug e o nome de cada evento.
        """
        event = self._db.query(Event).filter(func.lower(Event.slug) == slug.lower()).first()
        if event is None and slug.isdigit():
            event = self.get(int(slug))
        if event is not None:
            return event

        wanted = slug_key(slug)
        if not wanted:
            return None
        for candidate in self._db.query(Event).order_by(Event.id.asc()).all():
            if wanted in (slug_key(candidate.slug or ""), slug_key(candidate.name)):
                return candidate
        return None

    def find_active_rate_tier(self, event_id: int, on_date: date) -> Optional[RateTier]:
        """
        Lote vigente: ativo e com on_date dentro da janela [starts_on, ends_on].
        """
        return (
            self._db.query(RateTier)
            .filter(
                RateTier.event_id == event_id,
                RateTier.status == "active",
                RateTier.starts_on <= on_date,
                RateTier.ends_on >= on_date,
            )
            .order_by(RateTier.starts_on.asc())
            .first()
        )

    def find_next_rate_tier(self, event_id: int, on_date: date) -> Optional[RateTier]:
        """
        Próximo lote: ativo e com início depois de on_date.
        """
        return (
            self._db.query(RateTier)
            .filter(
                RateTier.event_id == event_id,
                RateTier.status == "active",
                RateTier.starts_on > on_date,
            )
            .order_by(RateTier.starts_on.asc())
            .first()
        )


class DirectoryRepository(_Repository):
    """
    Distritos e igrejas (somente leitura).
    """

    def list_districts(self, limit: Optional[int] = 20) -> List[District]:
        return self._db.query(District).order_by(District.name.asc()).limit(limit).all()

    def list_churches(self, limit: Optional[int] = 20, district_id: Optional[int] = None) -> List[Church]:
        query = self._db.query(Church)
        if district_id:
            query = query.filter(Church.district_id == district_id)
        return query.order_by(Church.name.asc()).limit(limit).all()

    def get_district(self, district_id: int) -> Optional[District]:
        return self._db.get(District, district_id)

    def get_church(self, church_id: int) -> Optional[Church]:
        return self._db.get(Church, church_id)

    def find_district_id(self, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        district = self._db.query(District).filter(District.name.ilike(f"%{name}%")).first()
        return district.id if district else None

    def find_church_id(self, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        church = self._db.query(Church).filter(Church.name.ilike(f"%{name}%")).first()
        return church.id if church else None

    def names_by_id(self, model, ids: Iterable[Optional[int]]) -> dict:
        wanted = {value for value in ids if value}
        if not wanted:
            return {}
        rows = self._db.query(model.id, model.name).filter(model.id.in_(wanted)).all()
        return {row.id: row.name for row in rows}


class RegistrationRepository(_Repository):
    """
    Repositório de inscrições.
    """

    def create_registration(
        self,
        event_id: int,
        total: Decimal,
        contact_channel: Optional[str] = None,
    ) -> Registration:
        registration = Registration(
            event_id=event_id,
            total=total,
            contact_channel=contact_channel,
            status=PaymentStatus.PENDING.value,
        )
        self._db.add(registration)
        self._commit("criar inscrição", event_id=event_id, total=total)
        self._db.refresh(registration)

        assert registration.id is not None, (
            "Registration persisted without id! "
            "This indicates a persistence error."
        )
        logger.debug(f"Inscrição criada: id={registration.id}, event_id={event_id}, total={total}")
        return registration

    def get(self, registration_id: int) -> Optional[Registration]:
        return self._db.get(Registration, registration_id)

    def mark_paid(self, registration_id: int) -> None:
        self._db.query(Registration).filter(Registration.id == registration_id).update(
            {Registration.status: PaymentStatus.PAID.value},
            synchronize_session=False,
        )
        self._commit("marcar inscrição como paga", registration_id=registration_id)


class ParticipantRepository(_Repository):
    """
    Repositório para operações de persistência de participantes.
    """

    def create_participant(
        self,
        registration_id: int,
        event_id: int,
        name: str,
        cpf: str,
        birthdate: Optional[date] = None,
        gender: Optional[str] = None,
        district_id: Optional[int] = None,
        church_id: Optional[int] = None,
        phone: Optional[str] = None,
    ) -> Participant:
        """
        Cria um novo participante. IntegrityError indica CPF já inscrito no evento.
        """
        logger.debug(
            f"Criando participante: registration_id={registration_id}, "
            f"event_id={event_id}, name={name}"
        )
        participant = Participant(
            registration_id=registration_id,
            event_id=event_id,
            name=name,
            cpf=cpf,
            birthdate=birthdate,
            gender=gender,
            district_id=district_id,
            church_id=church_id,
            phone=phone,
        )
        self._db.add(participant)
        self._commit("criar participante", event_id=event_id, cpf=cpf)
        self._db.refresh(participant)

        assert participant.id is not None, (
            "Participant persisted without id! "
            "This indicates a persistence error."
        )
        return participant

    def exists_for_event(self, event_id: int, cpf: str) -> bool:
        return (
            self._db.query(Participant.id)
            .filter(Participant.event_id == event_id, Participant.cpf == cpf)
            .first()
            is not None
        )

    def existing_cpfs_for_event(self, event_id: int, cpfs: Iterable[str]) -> List[str]:
        rows = (
            self._db.query(Participant.cpf)
            .filter(Participant.event_id == event_id, Participant.cpf.in_(list(cpfs)))
            .all()
        )
        return [row.cpf for row in rows]

    def list_for_registration(self, registration_id: int) -> List[Participant]:
        return (
            self._db.query(Participant)
            .filter(Participant.registration_id == registration_id)
            .order_by(Participant.id.asc())
            .all()
        )

    def find_registrations_by_cpf(self, cpf: str, limit: int = 3) -> List[Tuple]:
        """
        Inscrições de um CPF: (participante, nome do evento, status, data da inscrição).
        """
        return (
            self._db.query(
                Participant,
                Event.name,
                Registration.status,
                Registration.created_at,
            )
            .join(Registration, Registration.id == Participant.registration_id)
            .join(Event, Event.id == Participant.event_id)
            .filter(Participant.cpf == cpf)
            .order_by(Participant.created_at.desc(), Participant.id.desc())
            .limit(limit)
            .all()
        )


class PaymentRepository(_Repository):
    """
    Repositório de cobranças PIX.
    """

    def create_payment(
        self,
        registration_id: int,
        provider_payment_id: str,
        status: str,
        pix_code: Optional[str] = None,
        pix_qr_image: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        provider: str = "mercadopago",
    ) -> Payment:
        payment = Payment(
            registration_id=registration_id,
            provider=provider,
            provider_payment_id=provider_payment_id,
            status=status,
            pix_code=pix_code,
            pix_qr_image=pix_qr_image,
            expires_at=expires_at,
            paid_at=datetime.utcnow() if status == PaymentStatus.PAID.value else None,
        )
        self._db.add(payment)
        self._commit(
            "criar pagamento",
            registration_id=registration_id,
            provider_payment_id=provider_payment_id,
        )
        self._db.refresh(payment)
        return payment

    def find_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        return (
            self._db.query(Payment)
            .filter(Payment.provider_payment_id == str(provider_payment_id))
            .first()
        )

    def _latest_pending(self, *criteria) -> Optional[Tuple[Payment, Registration]]:
        row = (
            self._db.query(Payment, Registration)
            .join(Registration, Registration.id == Payment.registration_id)
            .filter(Payment.status == PaymentStatus.PENDING.value, *criteria)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )
        return (row[0], row[1]) if row else None

    def find_latest_pending_by_cpf(self, cpf: str) -> Optional[Tuple[Payment, Registration]]:
        registration_ids = select(Participant.registration_id).where(Participant.cpf == cpf)
        return self._latest_pending(Registration.id.in_(registration_ids))

    def find_latest_pending_by_contact(self, phone: str) -> Optional[Tuple[Payment, Registration]]:
        return self._latest_pending(Registration.contact_channel == phone)

    def mark_paid_if_pending(self, payment_id: int, paid_at: datetime) -> bool:
        """
        Atualização condicional PENDING → PAID.
        Retorna False se outro webhook já marcou o pagamento.
        """
        updated = (
            self._db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .update(
                {Payment.status: PaymentStatus.PAID.value, Payment.paid_at: paid_at},
                synchronize_session=False,
            )
        )
        self._commit("marcar pagamento como pago", payment_id=payment_id)
        return updated == 1

    def set_receipt_url(self, payment_id: int, receipt_url: str) -> None:
        self._db.query(Payment).filter(Payment.id == payment_id).update(
            {Payment.receipt_url: receipt_url},
            synchronize_session=False,
        )
        self._commit("salvar comprovante", payment_id=payment_id)


class LedgerRepository(_Repository):
    """
    Planilha desnormalizada de inscritos.
    """

    MAX_NUMBERING_ATTEMPTS = 3

    def append_participants(self, participants: List[Participant], status: str) -> int:
        """
        Acrescenta participantes ainda não presentes, numerando em sequência.
        Retorna quantas linhas foram inseridas.
        """
        if not participants:
            return 0

        ids = [p.id for p in participants]
        existing = {
            row.participant_id
            for row in self._db.query(LedgerEntry.participant_id)
            .filter(LedgerEntry.participant_id.in_(ids))
            .all()
        }
        to_insert = [p for p in participants if p.id not in existing]
        if not to_insert:
            return 0

        directory = DirectoryRepository(self._db)
        church_names = directory.names_by_id(Church, [p.church_id for p in to_insert])
        district_names = directory.names_by_id(District, [p.district_id for p in to_insert])

        for attempt in range(1, self.MAX_NUMBERING_ATTEMPTS + 1):
            start = (self._db.query(func.max(LedgerEntry.number)).scalar() or 0) + 1
            for offset, participant in enumerate(to_insert):
                self._db.add(LedgerEntry(
                    number=start + offset,
                    participant_id=participant.id,
                    name=participant.name,
                    birthdate=participant.birthdate,
                    age=calculate_age(participant.birthdate),
                    church_name=church_names.get(participant.church_id, "Nao informado"),
                    district_name=district_names.get(participant.district_id, "Nao informado"),
                    payment_status=status,
                ))
            try:
                self._db.commit()
                return len(to_insert)
            except IntegrityError as e:
                # Outro processo pegou a mesma numeração; recalcula
                self._db.rollback()
                logger.warning(
                    f"Conflito de numeração na planilha de inscritos: attempt={attempt}, "
                    f"error={type(e).__name__}"
                )
        raise RuntimeError("Não foi possível numerar os inscritos na planilha")

    def update_status(self, participant_ids: List[int], status: str) -> int:
        if not participant_ids:
            return 0
        updated = (
            self._db.query(LedgerEntry)
            .filter(LedgerEntry.participant_id.in_(participant_ids))
            .update({LedgerEntry.payment_status: status}, synchronize_session=False)
        )
        self._commit("atualizar planilha de inscritos", participants=len(participant_ids))
        return updated
