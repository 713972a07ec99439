import copy
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from .registration_state import ConversationStep

logger = logging.getLogger(__name__)


@dataclass
class ConversationState:
    """
    Estado da conversa de um telefone.

    - step: estado atual da máquina de conversa
    - context: dados em coleta (evento, quantidade, participantes, opções listadas)
    - last_message_id: id da última mensagem processada (deduplicação)
    """
    phone: str
    step: ConversationStep = ConversationStep.IDLE
    context: Dict[str, Any] = field(default_factory=dict)
    last_message_id: Optional[str] = None

    def transition(self, step: ConversationStep, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Troca de estado. Se context vier, substitui o contexto inteiro.
        """
        self.step = step
        if context is not None:
            self.context = context

    def reset(self) -> None:
        """
        Volta para IDLE com contexto vazio. Mantém last_message_id.
        """
        self.step = ConversationStep.IDLE
        self.context = {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phone": self.phone,
            "step": self.step.value,
            "context": self.context,
            "last_message_id": self.last_message_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        try:
            step = ConversationStep(data.get("step", ConversationStep.IDLE.value))
        except ValueError:
            logger.warning(
                f"Estado desconhecido na sessão, voltando para idle: "
                f"phone={data.get('phone')}, step={data.get('step')}"
            )
            return cls(phone=data["phone"], last_message_id=data.get("last_message_id"))
        return cls(
            phone=data["phone"],
            step=step,
            context=data.get("context") or {},
            last_message_id=data.get("last_message_id"),
        )


class InMemorySessionManager:
    """
    Gerenciador simples de sessões em memória.
    Usado em desenvolvimento e testes; em produção, RedisSessionManager.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def get_or_create(self, phone: str) -> ConversationState:
        # Guarda cópias para que mutações não salvas não vazem entre requisições
        data = self._sessions.get(phone)
        if data is None:
            logger.debug(f"Nova ConversationState criada: phone={phone}")
            return ConversationState(phone=phone)
        logger.debug(f"ConversationState recuperada: phone={phone}, step={data['step']}")
        return ConversationState.from_dict(copy.deepcopy(data))

    def save_session(self, state: ConversationState) -> None:
        self._sessions[state.phone] = copy.deepcopy(state.to_dict())
