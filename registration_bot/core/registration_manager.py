import logging
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import sessionmaker
from .session_manager import ConversationState
from .registration_state import ConversationStep, ParticipantData
from .errors import (
    ConfigurationError,
    DuplicateError,
    GatewayError,
    NotFoundError,
    RegistrationBotError,
    ValidationError,
)
from .intents import Intent, classify_global_intent, classify_idle_intent
from .normalizers import (
    format_brl,
    format_datetime_br,
    normalize_cpf,
    normalize_date,
    normalize_phone,
    parse_choice,
    parse_quantity,
    validate_cpf,
)
from .participant_parser import parse_participant_message
from .settlement import SettlementPipeline, send_pix_details
from ..config import AppConfig
from ..infra.messaging_client import PIX_PAYMENT_PROMPT
from ..storage.repository import (
    DirectoryRepository,
    EventRepository,
    ParticipantRepository,
    PaymentRepository,
)

logger = logging.getLogger(__name__)

MENU_TEXT = (
    "Escolha uma opção:\n\n"
    "1. Fazer inscrição\n"
    "2. Consultar inscrição\n"
    "3. Consultar PIX pendente\n"
    "4. Falar com suporte\n\n"
    "Responda apenas com o número."
)
PARTICIPANT_TEMPLATE = (
    "Nome: \n"
    "CPF: \n"
    "Data de Nascimento (DD/MM/AAAA): \n"
    "Gênero: \n"
    "Telefone:"
)
QUANTITY_PROMPT = "Quantos participantes deseja inscrever?\nResponda apenas com um número."
CONSULT_PROMPT = "Envie o CPF para consulta."
PIX_CONSULT_PROMPT = "Informe o CPF para consultar o PIX pendente."
INVALID_CPF = "CPF inválido. Envie um CPF válido com 11 dígitos."
DUPLICATE_CPF = "❌ Este CPF já está inscrito neste evento. Não é permitido duplicidade."


def _numbered(options: List[Dict[str, Any]]) -> str:
    return "\n".join(f"{index}. {option['name']}" for index, option in enumerate(options, start=1))


class RegistrationManager:
    """
    Máquina de estados da conversa de inscrição no WhatsApp.

    Cada mensagem aplica exatamente uma transição em `state` e depois envia
    as respostas. Se o envio falhar, a transição já está feita e o engine
    persiste o estado mesmo assim.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        messaging,
        settlement: SettlementPipeline,
        config: AppConfig,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._messaging = messaging
        self._settlement = settlement
        self._config = config
        self._handlers = {
            ConversationStep.IDLE: self._handle_idle,
            ConversationStep.MENU: self._handle_menu,
            ConversationStep.SELECTING_EVENT: self._handle_selecting_event,
            ConversationStep.QUANTITY: self._handle_quantity,
            ConversationStep.COLLECTING_PARTICIPANT: self._handle_collecting_participant,
            ConversationStep.SELECTING_DISTRICT: self._handle_selecting_district,
            ConversationStep.SELECTING_CHURCH: self._handle_selecting_church,
            ConversationStep.CONSULTING_REGISTRATION: self._handle_consulting_registration,
            ConversationStep.CONSULTING_PENDING_PAYMENT: self._handle_consulting_pending_payment,
        }

    @property
    def _pix_prompt_pause(self) -> float:
        return self._config.pix_prompt_delay_ms / 1000.0

    def _send(self, phone: str, message: str) -> None:
        self._messaging.send_text(phone, message)

    def handle_message(self, state: ConversationState, text: str) -> Optional[Intent]:
        """
        Processa uma mensagem já deduplicada.

        Atalhos globais (cancelar, suporte, PIX) têm prioridade sobre o estado
        atual. Retorna a intenção global aplicada, ou None quando a mensagem
        foi tratada pelo estado.
        """
        intent = classify_global_intent(text)
        logger.debug(
            f"Mensagem classificada: phone={state.phone}, step={state.step.value}, "
            f"intent={intent.value if intent else 'state_input'}"
        )
        try:
            if intent is not None:
                self._apply_global_intent(state, intent, text)
            else:
                self._handlers[state.step](state, text)
        except ValidationError as e:
            # Pedido repetido, estado não muda
            logger.info(
                f"Entrada inválida: phone={state.phone}, step={state.step.value}, error={e}"
            )
            self._send(state.phone, e.user_message)
        except NotFoundError as e:
            logger.info(f"Dado não encontrado, reiniciando: phone={state.phone}, error={e}")
            state.reset()
            self._send(state.phone, e.user_message)
        return intent

    # Atalhos globais

    def _apply_global_intent(self, state: ConversationState, intent: Intent, text: str) -> None:
        phone = state.phone
        if intent == Intent.CANCEL:
            logger.info(f"Sessão reiniciada pelo usuário: phone={phone}, step={state.step.value}")
            state.reset()
            self._send(phone, "Sessão reiniciada. Envie *Inscrição* para começar novamente.")
        elif intent == Intent.SUPPORT:
            self._send(phone, self._config.support_contact)
        elif intent == Intent.PIX_CONSULT:
            state.transition(ConversationStep.CONSULTING_PENDING_PAYMENT, {})
            self._send(phone, PIX_CONSULT_PROMPT)
        elif intent == Intent.PIX_COPY:
            found = self._find_pending_payment(phone, text)
            if not found or not found[0].pix_code:
                self._send(phone, "Não encontrei o código PIX copia e cola.")
                return
            self._send(phone, f"Copia e Cola PIX:\n{found[0].pix_code}")
            self._messaging.send_choice_prompt(phone, PIX_PAYMENT_PROMPT)
        elif intent == Intent.PIX_QR:
            found = self._find_pending_payment(phone, text)
            if not found or not found[0].pix_qr_image:
                self._send(phone, "Não encontrei QR Code pendente.")
                return
            self._messaging.send_image(phone, f"data:image/png;base64,{found[0].pix_qr_image}")
        elif intent == Intent.PIX_PAID:
            self._send(
                phone,
                "Recebemos sua confirmação. Assim que o Mercado Pago aprovar, avisaremos aqui.",
            )

    def _find_pending_payment(self, phone: str, text: str):
        """
        PIX pendente mais recente pelo CPF da mensagem ou, sem CPF válido
        (resposta de botão), pelo telefone que fez a inscrição.
        """
        cpf = normalize_cpf(text)
        with self._db_session_factory() as db:
            payments = PaymentRepository(db)
            if validate_cpf(cpf):
                return payments.find_latest_pending_by_cpf(cpf)
            return payments.find_latest_pending_by_contact(phone)

    # Menu

    def _show_menu(self, state: ConversationState) -> None:
        state.transition(ConversationStep.MENU, {})
        self._send(state.phone, MENU_TEXT)

    def _handle_idle(self, state: ConversationState, text: str) -> None:
        choice = parse_choice(text, 4)
        if choice is not None:
            self._apply_menu_choice(state, choice)
            return

        intent = classify_idle_intent(text)
        if intent == Intent.CONSULT_REGISTRATION:
            state.transition(ConversationStep.CONSULTING_REGISTRATION, {})
            self._send(state.phone, CONSULT_PROMPT)
        elif intent == Intent.REGISTER:
            self._start_registration(state)
        else:
            self._show_menu(state)

    def _handle_menu(self, state: ConversationState, text: str) -> None:
        choice = parse_choice(text, 4)
        if choice is None:
            raise ValidationError(
                f"Opção de menu inválida: text={text[:20]}",
                user_message="Opção inválida. Responda com 1, 2, 3 ou 4.",
            )
        self._apply_menu_choice(state, choice)

    def _apply_menu_choice(self, state: ConversationState, choice: int) -> None:
        if choice == 1:
            self._start_registration(state)
        elif choice == 2:
            state.transition(ConversationStep.CONSULTING_REGISTRATION, {})
            self._send(state.phone, CONSULT_PROMPT)
        elif choice == 3:
            state.transition(ConversationStep.CONSULTING_PENDING_PAYMENT, {})
            self._send(state.phone, PIX_CONSULT_PROMPT)
        else:
            state.reset()
            self._send(state.phone, self._config.support_contact)

    # Inscrição

    def _start_registration(self, state: ConversationState) -> None:
        with self._db_session_factory() as db:
            events = [
                {"id": event.id, "name": event.name}
                for event in EventRepository(db).list_active(self._config.max_listed_options)
            ]

        if not events:
            state.reset()
            self._send(state.phone, "Nenhum evento ativo no momento.")
            return

        logger.info(f"Usuário iniciou inscrição: phone={state.phone}, active_events={len(events)}")
        if len(events) == 1:
            state.transition(ConversationStep.QUANTITY, {"event_id": events[0]["id"]})
            self._send(state.phone, QUANTITY_PROMPT)
            return

        state.transition(ConversationStep.SELECTING_EVENT, {"event_options": events})
        self._send(
            state.phone,
            f"Temos mais de um evento aberto. Escolha um:\n\n{_numbered(events)}\n"
            "Responda apenas com o número.",
        )

    def _handle_selecting_event(self, state: ConversationState, text: str) -> None:
        options = state.context.get("event_options") or []
        choice = parse_choice(text, len(options))
        if choice is None:
            raise ValidationError(
                f"Evento inválido: text={text[:20]}, options={len(options)}",
                user_message="Opção inválida. Responda apenas com o número do evento.",
            )
        selected = options[choice - 1]
        state.transition(ConversationStep.QUANTITY, {"event_id": selected["id"]})
        self._send(state.phone, QUANTITY_PROMPT)

    def _handle_quantity(self, state: ConversationState, text: str) -> None:
        quantity = parse_quantity(text, self._config.max_participants)
        if quantity is None:
            raise ValidationError(
                f"Quantidade inválida: text={text[:20]}",
                user_message="Informe apenas um número válido para a quantidade.",
            )

        state.transition(
            ConversationStep.COLLECTING_PARTICIPANT,
            {
                "event_id": state.context.get("event_id"),
                "quantity": quantity,
                "current_index": 1,
                "participants": [],
            },
        )
        logger.info(f"Quantidade definida: phone={state.phone}, quantity={quantity}")
        if quantity == 1:
            self._send(
                state.phone,
                "Você vai cadastrar 1 participante.\n"
                f"Envie os dados neste formato (uma única mensagem):\n\n{PARTICIPANT_TEMPLATE}\n\n"
                "Depois você escolherá o distrito e a igreja.",
            )
        else:
            self._send(
                state.phone,
                f"Você vai cadastrar {quantity} participantes.\n"
                f"Envie 1 participante por mensagem neste formato:\n\n{PARTICIPANT_TEMPLATE}\n\n"
                "Após cada participante, vou pedir o distrito e a igreja, "
                "e depois o próximo participante.",
            )

    def _parse_participant(self, text: str) -> ParticipantData:
        parsed = parse_participant_message(text)
        if not parsed["name"] or not parsed["cpf"]:
            raise ValidationError(
                "Participante sem nome ou CPF",
                user_message=f"Não consegui entender. Envie no formato:\n{PARTICIPANT_TEMPLATE}",
            )

        cpf = normalize_cpf(parsed["cpf"])
        if not validate_cpf(cpf):
            raise ValidationError(f"CPF inválido: cpf={cpf}", user_message=INVALID_CPF)

        birthdate = None
        if parsed["birthdate"]:
            birthdate = normalize_date(parsed["birthdate"])
            if birthdate is None:
                raise ValidationError(
                    f"Data de nascimento inválida: value={parsed['birthdate']}",
                    user_message="Data de nascimento inválida. Use o formato DD/MM/AAAA.",
                )

        return ParticipantData(
            name=parsed["name"],
            cpf=cpf,
            birthdate=birthdate,
            gender=parsed["gender"] or None,
            phone=normalize_phone(parsed["phone"]) or None,
            district=parsed["district"] or None,
            church=parsed["church"] or None,
        )

    def _is_duplicate(self, event_id: int, cpf: str, batch: List[Dict[str, Any]]) -> bool:
        if any(item.get("cpf") == cpf for item in batch):
            return True
        with self._db_session_factory() as db:
            return ParticipantRepository(db).exists_for_event(event_id, cpf)

    def _handle_collecting_participant(self, state: ConversationState, text: str) -> None:
        pending = self._parse_participant(text)
        context = state.context
        current_index = context.get("current_index", 1)

        if self._is_duplicate(context.get("event_id"), pending.cpf, context.get("participants") or []):
            logger.warning(
                f"CPF duplicado no evento, participante descartado: phone={state.phone}, "
                f"event_id={context.get('event_id')}, index={current_index}"
            )
            self._send(state.phone, DUPLICATE_CPF)
            self._advance(state)
            return

        with self._db_session_factory() as db:
            directory = DirectoryRepository(db)
            districts = [
                {"id": d.id, "name": d.name}
                for d in directory.list_districts(self._config.max_listed_options)
            ]
            churches = [] if districts else [
                {"id": c.id, "name": c.name}
                for c in directory.list_churches(self._config.max_listed_options)
            ]

        if districts:
            state.transition(
                ConversationStep.SELECTING_DISTRICT,
                {**context, "pending_participant": pending.to_dict(), "district_options": districts},
            )
            self._send(
                state.phone,
                f"Selecione o distrito do Participante {current_index}:\n\n{_numbered(districts)}\n\n"
                "Responda apenas com o número. Se não aparecer, responda 0.",
            )
        elif churches:
            self._ask_church(state, pending, churches)
        else:
            self._accept(state, pending)

    def _pending_participant(self, state: ConversationState) -> ParticipantData:
        data = state.context.get("pending_participant") or {}
        if not data.get("name") or not data.get("cpf"):
            context = {
                key: value for key, value in state.context.items()
                if key not in ("pending_participant", "district_options", "church_options")
            }
            state.transition(ConversationStep.COLLECTING_PARTICIPANT, context)
            raise ValidationError(
                "Participante pendente ausente na sessão",
                user_message="Dados do participante não encontrados. Envie novamente.",
            )
        return ParticipantData.from_dict(data)

    def _ask_church(
        self,
        state: ConversationState,
        pending: ParticipantData,
        churches: List[Dict[str, Any]],
    ) -> None:
        context = {
            key: value for key, value in state.context.items() if key != "district_options"
        }
        context.update({"pending_participant": pending.to_dict(), "church_options": churches})
        state.transition(ConversationStep.SELECTING_CHURCH, context)
        self._send(
            state.phone,
            f"Selecione a igreja do Participante {context.get('current_index', 1)}:\n\n"
            f"{_numbered(churches)}\n\n"
            "Responda apenas com o número. Se não aparecer, responda 0.",
        )

    def _handle_selecting_district(self, state: ConversationState, text: str) -> None:
        options = state.context.get("district_options") or []
        choice = parse_choice(text, len(options), allow_zero=True)
        if choice is None:
            raise ValidationError(
                f"Distrito inválido: text={text[:20]}",
                user_message="Opção inválida. Responda com o número do distrito.",
            )
        pending = self._pending_participant(state)

        district_id = None
        if choice > 0:
            selected = options[choice - 1]
            pending.district_id = selected["id"]
            pending.district = selected["name"]
            district_id = selected["id"]

        with self._db_session_factory() as db:
            churches = [
                {"id": c.id, "name": c.name}
                for c in DirectoryRepository(db).list_churches(
                    self._config.max_listed_options, district_id=district_id
                )
            ]

        if churches:
            self._ask_church(state, pending, churches)
        else:
            self._accept(state, pending)

    def _handle_selecting_church(self, state: ConversationState, text: str) -> None:
        options = state.context.get("church_options") or []
        choice = parse_choice(text, len(options), allow_zero=True)
        if choice is None:
            raise ValidationError(
                f"Igreja inválida: text={text[:20]}",
                user_message="Opção inválida. Responda com o número da igreja.",
            )
        pending = self._pending_participant(state)
        if choice > 0:
            selected = options[choice - 1]
            pending.church_id = selected["id"]
            pending.church = selected["name"]
        self._accept(state, pending)

    def _accept(self, state: ConversationState, pending: ParticipantData) -> None:
        participants = list(state.context.get("participants") or [])
        participants.append(pending.to_dict())
        state.context["participants"] = participants
        logger.info(
            f"Participante aceito: phone={state.phone}, "
            f"index={state.context.get('current_index')}, total_accepted={len(participants)}"
        )
        self._advance(state)

    def _advance(self, state: ConversationState) -> None:
        """
        Próximo participante, ou finaliza quando todas as vagas foram
        preenchidas (aceitas ou descartadas por duplicidade).
        """
        context = {
            key: value for key, value in state.context.items()
            if key not in ("pending_participant", "district_options", "church_options")
        }
        next_index = context.get("current_index", 1) + 1
        context["current_index"] = next_index

        if next_index > context.get("quantity", 0):
            self._finalize(state, context)
            return

        state.transition(ConversationStep.COLLECTING_PARTICIPANT, context)
        self._send(
            state.phone,
            f"Envie os dados do Participante {next_index}:\n\n{PARTICIPANT_TEMPLATE}",
        )

    def _finalize(self, state: ConversationState, context: Dict[str, Any]) -> None:
        participants = [ParticipantData.from_dict(p) for p in context.get("participants") or []]
        event_id = context.get("event_id")
        state.reset()

        if not participants:
            self._send(
                state.phone,
                "Nenhum participante válido para inscrever. "
                "Envie *Inscrição* para começar novamente.",
            )
            return

        logger.info(
            f"Finalizando inscrição: phone={state.phone}, event_id={event_id}, "
            f"participants={len(participants)}"
        )
        try:
            self._settlement.settle(
                event_id=event_id,
                contact_channel=state.phone,
                participants=participants,
            )
        except (DuplicateError, GatewayError, ConfigurationError) as e:
            logger.error(
                f"Inscrição não concluída: phone={state.phone}, event_id={event_id}, "
                f"error={type(e).__name__}: {e}"
            )
            self._send(state.phone, f"{e.user_message}\n\n{self._config.support_contact}")
        except RegistrationBotError as e:
            logger.error(
                f"Inscrição não concluída: phone={state.phone}, event_id={event_id}, "
                f"error={type(e).__name__}: {e}"
            )
            self._send(state.phone, e.user_message)

    # Consultas

    def _require_cpf(self, text: str) -> str:
        cpf = normalize_cpf(text)
        if not validate_cpf(cpf):
            raise ValidationError(f"CPF inválido na consulta: digits={len(cpf)}", user_message=INVALID_CPF)
        return cpf

    def _handle_consulting_registration(self, state: ConversationState, text: str) -> None:
        cpf = self._require_cpf(text)
        with self._db_session_factory() as db:
            rows = ParticipantRepository(db).find_registrations_by_cpf(cpf, limit=3)
            found = [
                (participant.name, event_name, status, created_at)
                for participant, event_name, status, created_at in rows
            ]

        state.reset()
        if not found:
            self._send(state.phone, "❌ Nenhuma inscrição encontrada para esse CPF.")
            return

        self._send(
            state.phone,
            "\n\n".join(
                "✅ INSCRIÇÃO ENCONTRADA\n"
                f"Nome: {name}\n"
                f"Evento: {event_name}\n"
                f"Status: {status}\n"
                f"Data: {created_at.strftime('%d/%m/%Y') if created_at else '-'}"
                for name, event_name, status, created_at in found
            ),
        )

    def _handle_consulting_pending_payment(self, state: ConversationState, text: str) -> None:
        cpf = self._require_cpf(text)
        with self._db_session_factory() as db:
            found = PaymentRepository(db).find_latest_pending_by_cpf(cpf)

        state.reset()
        if found is None:
            self._send(state.phone, "Não encontrei PIX pendente para esse CPF.")
            return

        payment, registration = found
        self._send(
            state.phone,
            "PIX pendente encontrado.\n"
            f"Valor: R$ {format_brl(registration.total)}\n"
            f"Validade: {format_datetime_br(payment.expires_at)}",
        )
        send_pix_details(
            self._messaging,
            state.phone,
            payment.pix_qr_image,
            payment.pix_code,
            pause_seconds=self._pix_prompt_pause,
        )
