"""
Taxonomia de erros do fluxo de inscrição e pagamento.

Cada erro pode carregar uma `user_message`, o texto que o bot devolve ao
usuário quando o erro é tratado dentro da conversa.
"""
from typing import Optional


class RegistrationBotError(Exception):
    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ValidationError(RegistrationBotError):
    """Entrada inválida (CPF, data, escolha numérica). Sempre recuperável com novo pedido."""


class NotFoundError(RegistrationBotError):
    """Evento, sessão ou pagamento inexistente."""


class DuplicateError(RegistrationBotError):
    """CPF já inscrito no evento."""


class GatewayError(RegistrationBotError):
    """Falha do provedor de mensagens ou de pagamento após as tentativas."""


class ConfigurationError(RegistrationBotError):
    """Configuração ausente ou inválida (credenciais, lote vigente)."""


class NoActiveRateTier(ConfigurationError):
    def __init__(self, event_id: int) -> None:
        super().__init__(
            f"Nenhum lote vigente para o evento {event_id}",
            user_message="Não há lote vigente para este evento. Fale com a organização.",
        )
        self.event_id = event_id
