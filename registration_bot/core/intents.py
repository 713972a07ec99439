"""
Classificação de intenção das mensagens recebidas.

A ordem de avaliação é fixa e não depende do estado da conversa:
cancelar > suporte > atalhos de PIX > mensagem do estado atual.
"""
import re
from enum import Enum
from typing import Iterable, Optional

from .normalizers import normalize_text


class Intent(str, Enum):
    CANCEL = "cancel"
    SUPPORT = "support"
    PIX_CONSULT = "pix_consult"
    PIX_COPY = "pix_copy"
    PIX_QR = "pix_qr"
    PIX_PAID = "pix_paid"
    REGISTER = "register"
    CONSULT_REGISTRATION = "consult_registration"
    MENU = "menu"
    STATE_INPUT = "state_input"


CANCEL_KEYWORDS = ("cancelar", "sair", "reset", "reiniciar", "voltar")
SUPPORT_KEYWORDS = ("suporte", "falar com suporte", "ajuda", "atendimento")
PIX_CONSULT_KEYWORDS = (
    "consultar pix",
    "pix pendente",
    "meu pix",
    "pix pagamento",
    "reenvie pix",
    "reenviar pix",
)
PIX_COPY_KEYWORDS = (
    "copiar pix",
    "copia e cola",
    "pix copia",
    "copiar codigo pix",
    "copiar codigo",
    "pix_copy",
)
PIX_QR_KEYWORDS = ("reenviar qr", "reenviar qr code", "qr code", "qrcode", "pix_qr")
PIX_PAID_KEYWORDS = ("ja paguei", "paguei", "pix_paid")

REGISTER_KEYWORDS = (
    "quero me inscrever",
    "inscricao",
    "inscrever",
    "evento",
    "participar",
)
CONSULT_KEYWORDS = (
    "consultar inscricao",
    "minha inscricao",
    "consultar",
)
MENU_KEYWORDS = ("menu", "opcoes", "inicio")

# Ordem de prioridade dos atalhos globais
GLOBAL_INTENTS = (
    (Intent.CANCEL, CANCEL_KEYWORDS),
    (Intent.SUPPORT, SUPPORT_KEYWORDS),
    (Intent.PIX_CONSULT, PIX_CONSULT_KEYWORDS),
    (Intent.PIX_COPY, PIX_COPY_KEYWORDS),
    (Intent.PIX_QR, PIX_QR_KEYWORDS),
    (Intent.PIX_PAID, PIX_PAID_KEYWORDS),
)

def contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    """
    Procura palavras-chave como palavras inteiras no texto normalizado,
    para que "sair" não dispare em "Saire" nem "data" em "candidata".
    """
    normalized = normalize_text(text)
    return any(
        re.search(rf"\b{re.escape(keyword)}\b", normalized) for keyword in keywords
    )


def classify_global_intent(text: str) -> Optional[Intent]:
    """
    Retorna a intenção global da mensagem ou None quando ela deve ser
    tratada pelo estado atual da conversa.
    """
    for intent, keywords in GLOBAL_INTENTS:
        if contains_keyword(text, keywords):
            return intent
    return None


def classify_idle_intent(text: str) -> Intent:
    """
    Intenção de uma mensagem recebida com a conversa em IDLE.
    """
    if contains_keyword(text, CONSULT_KEYWORDS):
        return Intent.CONSULT_REGISTRATION
    if contains_keyword(text, REGISTER_KEYWORDS):
        return Intent.REGISTER
    if contains_keyword(text, MENU_KEYWORDS):
        return Intent.MENU
    return Intent.STATE_INPUT
