from dataclasses import dataclass
import os
import logging
from dotenv import load_dotenv

from .core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppConfig:
    """
    Configurações principais da aplicação.

    Segue a ideia de centralizar parâmetros críticos
    para facilitar revisão, testes e mudanças futuras.
    """
    database_url: str = "sqlite:///./registration_bot.db"
    redis_url: str = ""
    session_ttl_seconds: int = 0  # 0 = sessão não expira
    env: str = "dev"  # "dev" ou "prod"
    bot_api_key: str = ""
    whatsapp_webhook_secret: str = ""
    zapi_instance_id: str = ""
    zapi_token: str = ""
    zapi_base_url: str = "https://api.z-api.io"
    zapi_client_token: str = ""
    messaging_max_attempts: int = 3
    messaging_timeout_ms: int = 15000
    mercadopago_access_token: str = ""
    mercadopago_webhook_secret: str = ""
    payment_notification_url: str = ""
    payment_max_attempts: int = 3
    payment_timeout_ms: int = 20000
    pix_expiration_hours: int = 24
    pix_prompt_delay_ms: int = 600  # pausa antes dos botões de pagamento
    receipts_dir: str = "receipts"
    receipts_public_base_url: str = "http://localhost:8000/receipts"
    receipts_bucket: str = ""
    support_contact: str = (
        "Suporte: entre em contato pelo WhatsApp (91) 99332-0376 "
        "ou pelo e-mail suporte@evento.ideartcloud.com.br"
    )
    max_participants: int = 50
    max_listed_options: int = 20

    @property
    def messaging_configured(self) -> bool:
        return bool(self.zapi_instance_id and self.zapi_token)

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Carrega configuração a partir de variáveis de ambiente.
        Primeiro tenta carregar do arquivo .env, depois do ambiente do sistema.
        Levanta erro explícito se algo crítico faltar em produção.
        """
        load_dotenv()

        env = os.getenv("ENV", "dev").lower()
        if env not in ("dev", "prod"):
            logger.warning(f"ENV inválido '{env}', usando 'dev' como padrão")
            env = "dev"

        bot_api_key = os.getenv("BOT_API_KEY", "")
        zapi_instance_id = os.getenv("ZAPI_INSTANCE_ID", "")
        zapi_token = os.getenv("ZAPI_TOKEN", "")
        mercadopago_access_token = os.getenv("MERCADOPAGO_ACCESS_TOKEN", "")

        missing = [
            name for name, value in (
                ("BOT_API_KEY", bot_api_key),
                ("ZAPI_INSTANCE_ID", zapi_instance_id),
                ("ZAPI_TOKEN", zapi_token),
                ("MERCADOPAGO_ACCESS_TOKEN", mercadopago_access_token),
            )
            if not value.strip()
        ]
        if missing:
            if env == "prod":
                raise ConfigurationError(
                    f"ENV=prod requer as variáveis: {', '.join(missing)}"
                )
            logger.warning(
                f"⚠️  MODO DEV: variáveis não configuradas: {', '.join(missing)}. "
                "Envio de mensagens e geração de PIX vão falhar até serem definidas."
            )

        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            redis_url=os.getenv("REDIS_URL", ""),
            session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "0")),
            env=env,
            bot_api_key=bot_api_key,
            whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", ""),
            zapi_instance_id=zapi_instance_id,
            zapi_token=zapi_token,
            zapi_base_url=os.getenv("ZAPI_BASE_URL", defaults.zapi_base_url),
            zapi_client_token=os.getenv("ZAPI_CLIENT_TOKEN", ""),
            messaging_max_attempts=int(os.getenv("MESSAGING_MAX_ATTEMPTS", "3")),
            messaging_timeout_ms=int(os.getenv("MESSAGING_TIMEOUT_MS", "15000")),
            mercadopago_access_token=mercadopago_access_token,
            mercadopago_webhook_secret=os.getenv("MERCADOPAGO_WEBHOOK_SECRET", ""),
            payment_notification_url=os.getenv("PAYMENT_NOTIFICATION_URL", ""),
            payment_max_attempts=int(os.getenv("PAYMENT_MAX_ATTEMPTS", "3")),
            payment_timeout_ms=int(os.getenv("PAYMENT_TIMEOUT_MS", "20000")),
            pix_expiration_hours=int(os.getenv("PIX_EXPIRATION_HOURS", "24")),
            pix_prompt_delay_ms=int(os.getenv("PIX_PROMPT_DELAY_MS", "600")),
            receipts_dir=os.getenv("RECEIPTS_DIR", defaults.receipts_dir),
            receipts_public_base_url=os.getenv(
                "RECEIPTS_PUBLIC_BASE_URL", defaults.receipts_public_base_url
            ),
            receipts_bucket=os.getenv("RECEIPTS_BUCKET", ""),
            support_contact=os.getenv("SUPPORT_CONTACT", defaults.support_contact),
        )
