import logging
from datetime import date
from typing import Any, Dict, List, Optional
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from redis.exceptions import RedisError
from .session_manager import InMemorySessionManager
from .registration_manager import RegistrationManager
from .registration_state import ParticipantData
from .reconciliation import PaymentReconciler, ReconciliationOutcome
from .settlement import SettlementPipeline, SettlementResult
from .errors import DuplicateError, GatewayError, NotFoundError, ValidationError
from .normalizers import normalize_cpf, normalize_date, normalize_phone, validate_cpf
from ..session.redis_session_manager import RedisSessionManager
from ..config import AppConfig
from ..infra.messaging_client import MessagingClient
from ..infra.payment_gateway import MercadoPagoGateway
from ..infra.receipt_storage import create_receipt_storage
from ..storage.database import create_session_factory
from ..storage.repository import DirectoryRepository, EventRepository, ParticipantRepository

logger = logging.getLogger(__name__)


def _tier_dict(tier) -> Optional[Dict[str, Any]]:
    if tier is None:
        return None
    return {
        "id": tier.id,
        "name": tier.name,
        "price": tier.price,
        "starts_on": tier.starts_on,
        "ends_on": tier.ends_on,
    }


class ConversationEngine:
    """
    Núcleo do bot de inscrições.

    - Deduplica mensagens reentregues pelo provedor (message_id)
    - Delega a transição ao RegistrationManager
    - Persiste a sessão uma única vez por mensagem
    - Expõe o webhook de pagamento e a inscrição pública sobre o mesmo pipeline
    """

    def __init__(
        self,
        config: AppConfig,
        sessions=None,
        db_session_factory=None,
        messaging=None,
        payments=None,
        receipt_storage=None,
    ) -> None:
        self._config = config
        self._sessions = sessions or self._create_session_manager(config)

        if db_session_factory is None:
            # Em produção, não criar tabelas automaticamente (usar Alembic)
            create_tables = config.env == "dev"
            db_session_factory = create_session_factory(config.database_url, create_tables=create_tables)
        self._db_session_factory = db_session_factory

        self._messaging = messaging or MessagingClient(config)
        self._payments = payments or MercadoPagoGateway(config)
        self._receipt_storage = receipt_storage or create_receipt_storage(config)

        self._settlement = SettlementPipeline(
            db_session_factory=self._db_session_factory,
            payments=self._payments,
            messaging=self._messaging,
            config=config,
        )
        self._registration_manager = RegistrationManager(
            db_session_factory=self._db_session_factory,
            messaging=self._messaging,
            settlement=self._settlement,
            config=config,
        )
        self._reconciler = PaymentReconciler(
            db_session_factory=self._db_session_factory,
            payments=self._payments,
            messaging=self._messaging,
            receipt_storage=self._receipt_storage,
        )

        db_type = "sqlite" if "sqlite" in config.database_url else "postgres" if "postgres" in config.database_url else "unknown"
        logger.info(
            f"ConversationEngine inicializado: env={config.env}, database_type={db_type}, "
            f"sessions={type(self._sessions).__name__}"
        )

    @staticmethod
    def _create_session_manager(config: AppConfig):
        # Redis se configurado, senão InMemory
        if config.redis_url and config.redis_url.strip():
            try:
                sessions = RedisSessionManager(
                    redis_url=config.redis_url,
                    session_ttl_seconds=config.session_ttl_seconds,
                )
                logger.info("Sessões usando Redis")
                return sessions
            except RedisError as e:
                logger.error(f"Erro ao inicializar RedisSessionManager: {e}, usando InMemory como fallback")
                return InMemorySessionManager()
        logger.info("Sessões usando armazenamento em memória (REDIS_URL não configurado)")
        return InMemorySessionManager()

    def handle_message(
        self,
        phone: str,
        message_id: Optional[str],
        message_text: str,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Processa uma mensagem recebida do WhatsApp.

        Retorno em dict pra ser fácil de usar tanto na API HTTP quanto em testes.
        """
        phone = normalize_phone(phone)
        request_id_str = f"request_id={request_id}, " if request_id else ""

        # 1. Recuperar estado da conversa
        state = self._sessions.get_or_create(phone)

        # 2. Reentrega do provedor: reconhece sem efeito colateral
        if message_id and state.last_message_id == message_id:
            logger.info(
                f"Mensagem duplicada ignorada: {request_id_str}phone={phone}, message_id={message_id}"
            )
            return {"phone": phone, "step": state.step.value, "duplicate": True}

        previous_step = state.step
        state.last_message_id = message_id or state.last_message_id

        # 3. Aplicar a transição
        try:
            self._registration_manager.handle_message(state, message_text or "")
        except GatewayError as e:
            # Transição já aplicada; só a resposta não chegou
            logger.error(
                f"Falha ao enviar resposta: {request_id_str}phone={phone}, "
                f"step={state.step.value}, error={e}"
            )
        except Exception as e:
            logger.error(
                f"Erro inesperado no fluxo, sessão reiniciada: {request_id_str}phone={phone}, "
                f"step={state.step.value}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            state.reset()

        # 4. Persistir (uma escrita só, com o novo last_message_id)
        self._sessions.save_session(state)

        logger.info(
            f"Mensagem processada: {request_id_str}phone={phone}, "
            f"from_step={previous_step.value}, to_step={state.step.value}"
        )
        return {"phone": phone, "step": state.step.value, "duplicate": False}

    def get_session_snapshot(self, phone: str) -> Dict[str, Any]:
        state = self._sessions.get_or_create(normalize_phone(phone))
        return state.to_dict()

    def reconcile_payment(self, provider_payment_id: str) -> ReconciliationOutcome:
        outcome = self._reconciler.reconcile(provider_payment_id)
        logger.info(
            f"Webhook de pagamento aplicado: provider_payment_id={provider_payment_id}, "
            f"outcome={outcome.value}"
        )
        return outcome

    def register_public(
        self,
        event_id: int,
        payer_cpf: str,
        participants: List[Dict[str, Any]],
        whatsapp: Optional[str] = None,
        payer_name: Optional[str] = None,
    ) -> SettlementResult:
        """
        Inscrição vinda do formulário público, pelo mesmo pipeline do WhatsApp.

        Raises:
            ValidationError: CPF ou data inválidos, lista vazia ou grande demais,
                distrito ou igreja inexistente
            DuplicateError: CPF repetido no envio ou já inscrito no evento
        """
        payer_cpf = normalize_cpf(payer_cpf)
        if not validate_cpf(payer_cpf):
            raise ValidationError("CPF do pagador inválido", user_message="CPF do pagador inválido.")
        if not participants:
            raise ValidationError("Nenhum participante informado", user_message="Informe ao menos um participante.")
        if len(participants) > self._config.max_participants:
            raise ValidationError(
                f"Participantes demais: count={len(participants)}",
                user_message=f"Máximo de {self._config.max_participants} participantes por inscrição.",
            )

        records: List[ParticipantData] = []
        for index, item in enumerate(participants, start=1):
            cpf = normalize_cpf(item.get("cpf") or "")
            if not (item.get("name") or "").strip() or not validate_cpf(cpf):
                raise ValidationError(
                    f"Participante inválido: index={index}",
                    user_message=f"Participante {index}: nome ou CPF inválido.",
                )
            birthdate = None
            if item.get("birthdate"):
                birthdate = normalize_date(item["birthdate"])
                if birthdate is None:
                    raise ValidationError(
                        f"Data de nascimento inválida: index={index}",
                        user_message=f"Participante {index}: data de nascimento inválida.",
                    )
            records.append(ParticipantData(
                name=item["name"].strip(),
                cpf=cpf,
                birthdate=birthdate,
                gender=item.get("gender") or None,
                phone=normalize_phone(item.get("phone") or "") or None,
                district=item.get("district") or None,
                district_id=item.get("district_id") or None,
                church=item.get("church") or None,
                church_id=item.get("church_id") or None,
            ))

        cpfs = [record.cpf for record in records]
        repeated = sorted({cpf for cpf in cpfs if cpfs.count(cpf) > 1})
        if repeated:
            raise DuplicateError(
                f"CPF repetido no envio: cpfs={repeated}",
                user_message=f"CPF repetido na inscrição: {', '.join(repeated)}",
            )

        with self._db_session_factory() as db:
            self._check_directory_ids(DirectoryRepository(db), records)
            existing = ParticipantRepository(db).existing_cpfs_for_event(event_id, cpfs)
        if existing:
            raise DuplicateError(
                f"CPF já inscrito no evento: event_id={event_id}, cpfs={existing}",
                user_message=f"CPF já inscrito neste evento: {', '.join(sorted(existing))}",
            )

        contact = normalize_phone(whatsapp) if whatsapp else None
        logger.info(
            f"Inscrição pública recebida: event_id={event_id}, participants={len(records)}, "
            f"has_whatsapp={bool(contact)}"
        )
        return self._settlement.settle(
            event_id=event_id,
            contact_channel=contact,
            participants=records,
            payer_cpf=payer_cpf,
            payer_name=payer_name,
        )

    def public_event(self, slug: str, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Dados para o formulário público: evento, lote vigente, próximo lote,
        distritos e igrejas.

        Raises:
            NotFoundError: nenhum evento corresponde ao slug
        """
        today = today or date.today()
        with self._db_session_factory() as db:
            events = EventRepository(db)
            event = events.find_by_slug(slug.strip())
            if event is None:
                raise NotFoundError(
                    f"Evento não encontrado: slug={slug}",
                    user_message="Evento não encontrado.",
                )
            tier = events.find_active_rate_tier(event.id, today)
            next_tier = events.find_next_rate_tier(event.id, today)
            directory = DirectoryRepository(db)
            districts = directory.list_districts(limit=None)
            churches = directory.list_churches(limit=None)

            return {
                "event": {"id": event.id, "name": event.name, "slug": event.slug, "status": event.status},
                "rate_tier": _tier_dict(tier),
                "next_rate_tier": _tier_dict(next_tier),
                "districts": [{"id": d.id, "name": d.name} for d in districts],
                "churches": [
                    {"id": c.id, "name": c.name, "district_id": c.district_id} for c in churches
                ],
            }

    @staticmethod
    def _check_directory_ids(directory: DirectoryRepository, records: List[ParticipantData]) -> None:
        for index, record in enumerate(records, start=1):
            district = directory.get_district(record.district_id) if record.district_id else None
            if record.district_id and district is None:
                raise ValidationError(
                    f"Distrito inexistente: index={index}, district_id={record.district_id}",
                    user_message=f"Participante {index}: distrito não encontrado.",
                )
            if not record.church_id:
                continue
            church = directory.get_church(record.church_id)
            if church is None:
                raise ValidationError(
                    f"Igreja inexistente: index={index}, church_id={record.church_id}",
                    user_message=f"Participante {index}: igreja não encontrada.",
                )
            if district is not None and church.district_id not in (None, district.id):
                raise ValidationError(
                    f"Igreja fora do distrito: index={index}, church_id={church.id}, district_id={district.id}",
                    user_message=f"Participante {index}: a igreja não pertence ao distrito informado.",
                )

    def health(self) -> Dict[str, str]:
        db_ok = True
        try:
            with self._db_session_factory() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning(f"Database health check falhou: {e}")
            db_ok = False

        redis_status = "disabled"
        if isinstance(self._sessions, RedisSessionManager):
            redis_status = "ok" if self._sessions.ping() else "error"

        return {
            "status": "healthy" if db_ok and redis_status != "error" else "degraded",
            "database": "ok" if db_ok else "error",
            "redis": redis_status,
        }
