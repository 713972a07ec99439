import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import mercadopago
import requests
from mercadopago.config import RequestOptions
from ..config import AppConfig
from ..core.errors import ConfigurationError, GatewayError
from ..core.normalizers import strip_accents

logger = logging.getLogger(__name__)

APPROVED = "approved"


@dataclass(frozen=True)
class PixCharge:
    provider_payment_id: str
    status: str
    pix_code: Optional[str]
    qr_code_base64: Optional[str]
    expires_at: Optional[datetime]

    @property
    def approved(self) -> bool:
        return self.status == APPROVED


def _parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Converte "2024-05-01T10:00:00.000-04:00" em datetime UTC sem fuso.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Data de expiração do PIX em formato inesperado: value={value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _split_name(name: str):
    parts = (name or "").split()
    if not parts:
        return "Participante", ""
    return parts[0], " ".join(parts[1:])


class MercadoPagoGateway:
    """
    Cobranças PIX via SDK do Mercado Pago.

    Retry para falhas de rede, 429 e 5xx; erros 4xx (dados inválidos,
    credencial recusada) não são retentados.
    """

    def __init__(self, config: AppConfig, sdk: Any = None) -> None:
        self._config = config
        self._sdk = sdk
        self._max_attempts = max(1, config.payment_max_attempts)
        self._timeout_seconds = config.payment_timeout_ms / 1000.0

    def _get_sdk(self):
        if self._sdk is None:
            token = (self._config.mercadopago_access_token or "").strip()
            if not token:
                raise ConfigurationError("MERCADOPAGO_ACCESS_TOKEN não configurado")
            self._sdk = mercadopago.SDK(token)
        return self._sdk

    def _should_retry(self, status_code: Optional[int]) -> bool:
        if status_code is None:
            return True
        if status_code == 429:
            return True
        return 500 <= status_code < 600

    def _call(self, operation: str, func: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        last_error = ""
        for attempt in range(1, self._max_attempts + 1):
            start_time = time.time()
            try:
                result = func() or {}
            except requests.RequestException as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"Falha de rede no Mercado Pago: operation={operation}, "
                    f"attempt={attempt}/{self._max_attempts}, error={last_error}"
                )
                continue

            status_code = result.get("status")
            duration_ms = (time.time() - start_time) * 1000
            if status_code in (200, 201):
                logger.debug(
                    f"Mercado Pago ok: operation={operation}, attempt={attempt}, "
                    f"duration_ms={duration_ms:.2f}"
                )
                return result.get("response") or {}

            last_error = f"status={status_code}, response={result.get('response')}"
            if not self._should_retry(status_code):
                logger.error(f"Mercado Pago recusou a operação: operation={operation}, {last_error}")
                break
            logger.warning(
                f"Erro transitório no Mercado Pago: operation={operation}, "
                f"attempt={attempt}/{self._max_attempts}, {last_error}"
            )

        raise GatewayError(f"Mercado Pago falhou: operation={operation}, {last_error}")

    def create_pix_charge(
        self,
        amount: Decimal,
        description: str,
        payer_cpf: str,
        payer_name: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PixCharge:
        """
        Cria a cobrança PIX. A chave de idempotência garante que um retry
        não gere uma segunda cobrança para a mesma inscrição.
        """
        sdk = self._get_sdk()
        first_name, last_name = _split_name(payer_name)
        expiration = datetime.now(timezone.utc) + timedelta(hours=self._config.pix_expiration_hours)

        body: Dict[str, Any] = {
            "transaction_amount": float(amount),
            "description": strip_accents(description or "Inscricao"),
            "payment_method_id": "pix",
            "date_of_expiration": expiration.isoformat(timespec="milliseconds"),
            "payer": {
                "email": f"{payer_cpf}@exemplo.com",
                "first_name": first_name,
                "last_name": last_name,
                "identification": {"type": "CPF", "number": payer_cpf},
            },
            "metadata": metadata or {},
        }
        if self._config.payment_notification_url:
            body["notification_url"] = self._config.payment_notification_url

        request_options = RequestOptions(
            connection_timeout=self._timeout_seconds,
            custom_headers={"x-idempotency-key": idempotency_key},
        )
        response = self._call(
            "create_pix_charge",
            lambda: sdk.payment().create(body, request_options),
        )

        transaction = (response.get("point_of_interaction") or {}).get("transaction_data") or {}
        payment_id = response.get("id")
        if not payment_id:
            raise GatewayError(f"Mercado Pago não retornou id do pagamento: response={response}")

        charge = PixCharge(
            provider_payment_id=str(payment_id),
            status=response.get("status") or "pending",
            pix_code=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
            expires_at=(
                _parse_provider_datetime(response.get("date_of_expiration"))
                or expiration.replace(tzinfo=None)
            ),
        )
        logger.info(
            f"Cobrança PIX criada: provider_payment_id={charge.provider_payment_id}, "
            f"status={charge.status}, amount={amount}, idempotency_key={idempotency_key}"
        )
        return charge

    def fetch_payment(self, provider_payment_id: str) -> Dict[str, Any]:
        """
        Busca o estado atual do pagamento (fonte da verdade para o webhook).
        """
        sdk = self._get_sdk()
        return self._call(
            "fetch_payment",
            lambda: sdk.payment().get(provider_payment_id),
        )


def verify_mercadopago_signature(
    secret: str,
    x_signature: Optional[str],
    x_request_id: Optional[str],
    data_id: Optional[str],
) -> bool:
    """
    Valida o header x-signature ("ts=...,v1=...") do webhook.

    Manifesto assinado: "id:{data.id};request-id:{x-request-id};ts:{ts};"
    """
    if not x_signature:
        return False

    parts = {}
    for chunk in x_signature.split(","):
        key, _, value = chunk.strip().partition("=")
        if key and value:
            parts[key.strip()] = value.strip()

    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False

    manifest = ""
    if data_id:
        manifest += f"id:{str(data_id).lower()};"
    if x_request_id:
        manifest += f"request-id:{x_request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)
