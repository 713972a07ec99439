import logging
import os
import time
from datetime import date, datetime
from uuid import uuid4
from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from ..config import AppConfig
from ..core.engine import ConversationEngine
from ..core.errors import (
    ConfigurationError,
    DuplicateError,
    GatewayError,
    NoActiveRateTier,
    NotFoundError,
    RegistrationBotError,
    ValidationError,
)
from ..infra.payment_gateway import verify_mercadopago_signature

logger = logging.getLogger(__name__)


class PublicParticipant(BaseModel):
    name: str
    cpf: str
    birthdate: Optional[str] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    district: Optional[str] = None
    district_id: Optional[int] = None
    church: Optional[str] = None
    church_id: Optional[int] = None


class PublicRegistrationRequest(BaseModel):
    event_id: int
    payer_cpf: str
    payer_name: Optional[str] = None
    whatsapp: Optional[str] = None
    participants: List[PublicParticipant]


class PublicRegistrationResponse(BaseModel):
    registration_id: int
    event_name: str
    rate_tier: str
    unit_price: float
    participants: int
    total: float
    payment_status: str
    provider_payment_id: str
    pix_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    expires_at: Optional[datetime] = None


class PublicRateTier(BaseModel):
    id: int
    name: str
    price: float
    starts_on: date
    ends_on: date


class PublicDistrict(BaseModel):
    id: int
    name: str


class PublicChurch(BaseModel):
    id: int
    name: str
    district_id: Optional[int] = None


class PublicEventInfo(BaseModel):
    id: int
    name: str
    slug: Optional[str] = None
    status: str


class PublicEventResponse(BaseModel):
    event: PublicEventInfo
    rate_tier: Optional[PublicRateTier] = None
    next_rate_tier: Optional[PublicRateTier] = None
    districts: List[PublicDistrict]
    churches: List[PublicChurch]


class SessionResponse(BaseModel):
    phone: str
    step: str
    context: Dict[str, Any]
    last_message_id: Optional[str] = None


class AckResponse(BaseModel):
    ok: bool = True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware que gera request_id único para cada requisição
    e adiciona aos logs e headers de resposta.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = uuid4().hex[:16]  # 16 caracteres hexadecimais
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Request processado: request_id={request_id}, "
            f"method={request.method}, path={request.url.path}, "
            f"status={response.status_code}, duration_ms={duration_ms:.2f}"
        )
        return response


def require_api_key(config: AppConfig, x_api_key: Optional[str]) -> None:
    """
    Valida API key baseado no ambiente.

    Em produção (ENV=prod), sempre exige API key.
    Em desenvolvimento (ENV=dev), só exige se BOT_API_KEY estiver configurada.
    """
    expected_key = config.bot_api_key or ""

    if config.env == "prod":
        if not x_api_key or x_api_key != expected_key:
            logger.warning("Tentativa de acesso não autorizado em PRODUÇÃO")
            raise HTTPException(status_code=401, detail="Invalid API key")
    elif expected_key.strip():
        if x_api_key != expected_key:
            logger.warning("Tentativa de acesso não autorizado em DEV")
            raise HTTPException(status_code=401, detail="Invalid API key")
    else:
        logger.debug("BOT_API_KEY não configurada, aceitando requisição sem autenticação (modo desenvolvimento)")


def require_webhook_secret(config: AppConfig, request: Request) -> None:
    """
    Segredo compartilhado com o provedor de WhatsApp, aceito em
    x-whatsapp-webhook-secret ou whatsapp_webhook_secret.
    """
    expected = config.whatsapp_webhook_secret
    if not expected:
        return
    received = (
        request.headers.get("x-whatsapp-webhook-secret")
        or request.headers.get("whatsapp_webhook_secret")
    )
    if received != expected:
        logger.warning("Webhook do WhatsApp com segredo inválido")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


def hash_number(number: str) -> str:
    """
    Retorna hash parcial do número para logs (primeiros 4 e últimos 4 dígitos).
    Ex: "5511999999999" -> "5511****9999"
    """
    if len(number) <= 8:
        return "****"
    return f"{number[:4]}****{number[-4:]}"


def extract_whatsapp_message(payload: Any) -> Optional[Dict[str, Any]]:
    """
    Extrai telefone, id e texto do payload da Z-API, que varia conforme o
    tipo de evento (campos na raiz, em "data" ou em "sender").

    Retorna None quando não há o que processar: payload inválido, sem
    telefone ou mensagem enviada pela própria instância (fromMe).
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}

    from_me = payload.get("fromMe", data.get("fromMe", False))
    if from_me:
        return None

    phone = payload.get("phone") or data.get("phone") or sender.get("phone")
    if not phone:
        return None

    text = payload.get("text") if "text" in payload else data.get("text")
    if isinstance(text, dict):
        text = text.get("message")
    if not text:
        # Respostas de botão chegam sem "text"
        for key in ("buttonsResponseMessage", "listResponseMessage"):
            reply = payload.get(key) or data.get(key)
            if isinstance(reply, dict):
                text = (
                    reply.get("message")
                    or reply.get("title")
                    or reply.get("buttonId")
                    or reply.get("selectedRowId")
                )
                if text:
                    break

    message_id = (
        payload.get("messageId")
        or data.get("messageId")
        or payload.get("id")
        or data.get("id")
        or payload.get("momment")
        or data.get("momment")
    )
    return {
        "phone": str(phone),
        "message_id": str(message_id) if message_id else None,
        "text": str(text or ""),
    }


def _status_for(error: RegistrationBotError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, DuplicateError):
        return 409
    if isinstance(error, NoActiveRateTier):
        return 422
    if isinstance(error, GatewayError):
        return 502
    if isinstance(error, ConfigurationError):
        return 503
    return 500


def create_app(config: Optional[AppConfig] = None, engine: Optional[ConversationEngine] = None) -> FastAPI:
    """
    Cria a aplicação FastAPI e injeta dependências principais (config + engine).
    """
    config = config or AppConfig.load_from_env()
    engine = engine or ConversationEngine(config=config)

    app = FastAPI(
        title="Registration Bot API",
        version="0.1.0",
        description="Inscrições em eventos pelo WhatsApp com pagamento via PIX.",
    )
    app.add_middleware(RequestIDMiddleware)

    if not config.receipts_bucket:
        os.makedirs(config.receipts_dir, exist_ok=True)
        app.mount("/receipts", StaticFiles(directory=config.receipts_dir), name="receipts")

    @app.get("/health")
    def health_check():
        """
        Endpoint de health check para monitoramento e Docker healthchecks.
        """
        return engine.health()

    @app.post("/whatsapp/webhook", response_model=AckResponse)
    async def whatsapp_webhook(request: Request) -> AckResponse:
        """
        Recebe mensagens da Z-API. Sempre responde 200 depois de autenticado,
        para o provedor não reenviar o que já foi tratado.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        require_webhook_secret(config, request)

        try:
            payload = await request.json()
        except ValueError:
            logger.warning(f"Webhook do WhatsApp com JSON inválido: request_id={request_id}")
            return AckResponse()

        message = extract_whatsapp_message(payload)
        if message is None:
            logger.debug(f"Webhook do WhatsApp ignorado: request_id={request_id}")
            return AckResponse()

        number_hash = hash_number(message["phone"])
        logger.info(
            f"Recebida mensagem do WhatsApp: request_id={request_id}, "
            f"number={number_hash}, message_id={message['message_id']}, "
            f"message_length={len(message['text'])}"
        )

        start_time = time.time()
        result = await run_in_threadpool(
            engine.handle_message,
            message["phone"],
            message["message_id"],
            message["text"],
            request_id,
        )
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Mensagem do WhatsApp tratada: request_id={request_id}, number={number_hash}, "
            f"step={result['step']}, duplicate={result['duplicate']}, duration_ms={duration_ms:.2f}"
        )
        return AckResponse()

    @app.post("/payments/mercadopago/webhook", response_model=AckResponse)
    async def mercadopago_webhook(request: Request) -> AckResponse:
        """
        Notificação de pagamento. Sempre responde 200; com assinatura inválida
        apenas loga e não reconcilia.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        query = request.query_params
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        payment_id = data.get("id") or body.get("id") or query.get("id") or query.get("data.id")
        if not payment_id:
            logger.warning(f"Webhook do Mercado Pago sem id de pagamento: request_id={request_id}")
            return AckResponse()

        if config.mercadopago_webhook_secret:
            valid = verify_mercadopago_signature(
                config.mercadopago_webhook_secret,
                request.headers.get("x-signature"),
                request.headers.get("x-request-id"),
                query.get("data.id") or str(payment_id),
            )
            if not valid:
                logger.warning(
                    f"Assinatura inválida no webhook do Mercado Pago: request_id={request_id}, "
                    f"payment_id={payment_id}"
                )
                return AckResponse()

        outcome = await run_in_threadpool(engine.reconcile_payment, str(payment_id))
        logger.info(
            f"Webhook do Mercado Pago: request_id={request_id}, payment_id={payment_id}, "
            f"outcome={outcome.value}"
        )
        return AckResponse()

    @app.get("/public/events/{slug}", response_model=PublicEventResponse)
    def public_event(slug: str, request: Request) -> PublicEventResponse:
        """
        Evento, lote vigente, próximo lote, distritos e igrejas para o formulário público.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        try:
            info = engine.public_event(slug)
        except RegistrationBotError as e:
            status_code = _status_for(e)
            logger.warning(
                f"Evento público não resolvido: request_id={request_id}, slug={slug}, "
                f"status={status_code}, error={type(e).__name__}: {e}"
            )
            raise HTTPException(status_code=status_code, detail=e.user_message)

        logger.info(
            f"Evento público consultado: request_id={request_id}, event_id={info['event']['id']}, "
            f"has_rate_tier={info['rate_tier'] is not None}"
        )
        return PublicEventResponse(**info)

    @app.post("/public/registrations", response_model=PublicRegistrationResponse)
    def public_registration(payload: PublicRegistrationRequest, request: Request) -> PublicRegistrationResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()
        try:
            result = engine.register_public(
                event_id=payload.event_id,
                payer_cpf=payload.payer_cpf,
                participants=[p.model_dump() for p in payload.participants],
                whatsapp=payload.whatsapp,
                payer_name=payload.payer_name,
            )
        except RegistrationBotError as e:
            status_code = _status_for(e)
            logger.warning(
                f"Inscrição pública recusada: request_id={request_id}, status={status_code}, "
                f"error={type(e).__name__}: {e}"
            )
            raise HTTPException(status_code=status_code, detail=e.user_message)

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Inscrição pública criada: request_id={request_id}, "
            f"registration_id={result.registration_id}, total={result.total}, "
            f"duration_ms={duration_ms:.2f}"
        )
        return PublicRegistrationResponse(
            registration_id=result.registration_id,
            event_name=result.event_name,
            rate_tier=result.rate_tier_name,
            unit_price=float(result.unit_price),
            participants=result.participant_count,
            total=float(result.total),
            payment_status=result.payment_status,
            provider_payment_id=result.provider_payment_id,
            pix_code=result.pix_code,
            qr_code_base64=result.qr_code_base64,
            expires_at=result.expires_at,
        )

    @app.get("/sessions/{phone}", response_model=SessionResponse)
    def get_session(
        phone: str,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> SessionResponse:
        """
        Estado atual da conversa de um telefone (suporte/operadores).
        """
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)

        snapshot = engine.get_session_snapshot(phone)
        logger.info(
            f"Sessão consultada: request_id={request_id}, "
            f"number={hash_number(snapshot['phone'])}, step={snapshot['step']}"
        )
        return SessionResponse(**snapshot)

    return app
