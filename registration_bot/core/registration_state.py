from enum import Enum
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any


class ConversationStep(str, Enum):
    """
    Estados da conversa no WhatsApp.

    IDLE é o estado inicial e também o destino de todo reset.
    """
    IDLE = "idle"
    MENU = "menu"
    SELECTING_EVENT = "selecting_event"
    QUANTITY = "quantity"
    COLLECTING_PARTICIPANT = "collecting_participant"
    SELECTING_DISTRICT = "selecting_district"
    SELECTING_CHURCH = "selecting_church"
    CONSULTING_REGISTRATION = "consulting_registration"
    CONSULTING_PENDING_PAYMENT = "consulting_pending_payment"


@dataclass
class ParticipantData:
    """
    Dados de um participante coletados na conversa.
    Guardado no contexto da sessão como dict (JSON).
    """
    name: str
    cpf: str
    birthdate: Optional[str] = None  # ISO yyyy-mm-dd
    gender: Optional[str] = None
    phone: Optional[str] = None
    district: Optional[str] = None
    district_id: Optional[int] = None
    church: Optional[str] = None
    church_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantData":
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in data.items() if key in fields})
