import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
import requests
from ..config import AppConfig
from ..core.errors import ConfigurationError, GatewayError
from ..core.normalizers import normalize_phone, strip_accents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChoiceOption:
    id: str
    label: str


@dataclass(frozen=True)
class ChoicePrompt:
    """
    Pergunta com opções clicáveis. `fallback_text` é usado quando o
    provedor não aceita nenhum formato de botão.
    """
    message: str
    options: Tuple[ChoiceOption, ...]
    fallback_text: str
    title: str = ""
    description: str = ""
    button_text: str = "Opcoes"


PIX_PAYMENT_PROMPT = ChoicePrompt(
    message="Escolha uma opcao para pagamento:",
    options=(
        ChoiceOption(id="pix_copy", label="Copiar PIX"),
        ChoiceOption(id="pix_qr", label="Reenviar QR Code"),
        ChoiceOption(id="pix_paid", label="Ja paguei"),
    ),
    fallback_text=(
        "Opcoes:\n"
        "1. Copiar PIX\n"
        "2. Reenviar QR Code\n"
        "3. Ja paguei\n"
        "Responda com o nome da opcao."
    ),
    title="Pagamento PIX",
    description="Selecione uma opcao",
)


class MessagingClient:
    """
    Cliente HTTP da Z-API (WhatsApp).

    Cada envio faz até `messaging_max_attempts` tentativas síncronas, cada uma
    limitada por `messaging_timeout_ms`. Esgotadas as tentativas, levanta
    GatewayError. Textos saem sem acentos porque alguns aparelhos exibem os
    caracteres acentuados da Z-API quebrados.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._max_attempts = max(1, config.messaging_max_attempts)
        self._timeout_seconds = config.messaging_timeout_ms / 1000.0

    def _endpoint_url(self, endpoint: str) -> str:
        if not self._config.messaging_configured:
            raise ConfigurationError("Z-API não configurada (ZAPI_INSTANCE_ID/ZAPI_TOKEN)")
        base_url = self._config.zapi_base_url.rstrip("/")
        return (
            f"{base_url}/instances/{self._config.zapi_instance_id}"
            f"/token/{self._config.zapi_token}/{endpoint}"
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.zapi_client_token:
            headers["Client-Token"] = self._config.zapi_client_token
        return headers

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._endpoint_url(endpoint)
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_attempts + 1):
            start_time = time.time()
            try:
                response = requests.post(
                    url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self._timeout_seconds,
                )
                response.raise_for_status()
                duration_ms = (time.time() - start_time) * 1000
                logger.debug(
                    f"Z-API ok: endpoint={endpoint}, attempt={attempt}, "
                    f"duration_ms={duration_ms:.2f}"
                )
                try:
                    return response.json()
                except ValueError:
                    return {}
            except requests.RequestException as e:
                last_error = e
                logger.warning(
                    f"Falha ao chamar Z-API: endpoint={endpoint}, "
                    f"attempt={attempt}/{self._max_attempts}, "
                    f"error={type(e).__name__}: {e}"
                )

        raise GatewayError(
            f"Z-API indisponível após {self._max_attempts} tentativas: "
            f"endpoint={endpoint}, last_error={last_error}"
        )

    def send_text(self, phone: str, message: str) -> Dict[str, Any]:
        return self._post(
            "send-text",
            {"phone": normalize_phone(phone), "message": strip_accents(message)},
        )

    def send_image(self, phone: str, image: str, caption: Optional[str] = None) -> Dict[str, Any]:
        """
        Envia imagem (URL ou data URI base64).
        """
        payload: Dict[str, Any] = {"phone": normalize_phone(phone), "image": image}
        if caption:
            payload["caption"] = strip_accents(caption)
        return self._post("send-image", payload)

    def _choice_strategies(
        self, phone: str, prompt: ChoicePrompt
    ) -> List[Tuple[str, Callable[[], Dict[str, Any]]]]:
        message = strip_accents(prompt.message)
        labels = [strip_accents(option.label) for option in prompt.options]

        def button_list() -> Dict[str, Any]:
            return self._post("send-button-list", {
                "phone": phone,
                "message": message,
                "buttonList": {
                    "buttons": [
                        {"id": option.id, "label": label}
                        for option, label in zip(prompt.options, labels)
                    ],
                    "title": prompt.title,
                    "description": prompt.description,
                    "buttonText": prompt.button_text,
                },
            })

        def button_actions_by_label() -> Dict[str, Any]:
            return self._post("send-button-actions", {
                "phone": phone,
                "message": message,
                "buttonActions": [{"type": "REPLY", "label": label} for label in labels],
            })

        def button_actions_by_id() -> Dict[str, Any]:
            return self._post("send-button-actions", {
                "phone": phone,
                "message": message,
                "buttonActions": [
                    {"id": option.id, "title": label}
                    for option, label in zip(prompt.options, labels)
                ],
            })

        return [
            ("button_list", button_list),
            ("button_actions_label", button_actions_by_label),
            ("button_actions_id", button_actions_by_id),
        ]

    def send_choice_prompt(self, phone: str, prompt: ChoicePrompt) -> str:
        """
        Envia uma pergunta com botões tentando os formatos em ordem
        (lista de botões, botões por label, botões por id) e cai para texto
        simples se nenhum funcionar. Retorna o nome da estratégia usada.
        """
        normalized_phone = normalize_phone(phone)
        for name, strategy in self._choice_strategies(normalized_phone, prompt):
            try:
                strategy()
                logger.debug(f"Pergunta com botões enviada: strategy={name}")
                return name
            except GatewayError as e:
                logger.warning(f"Estratégia de botões falhou: strategy={name}, error={e}")

        self.send_text(normalized_phone, prompt.fallback_text)
        logger.info("Pergunta enviada como texto simples (botões indisponíveis)")
        return "plain_text"
