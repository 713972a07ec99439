"""
Gerenciador de sessões usando Redis como backend.
Armazena ConversationState serializado em JSON, opcionalmente com TTL.
"""
import logging
import json
from redis import Redis
from redis.exceptions import RedisError
from ..core.session_manager import ConversationState

logger = logging.getLogger(__name__)


class RedisSessionManager:
    """
    Gerenciador de sessões usando Redis.

    Armazena cada sessão em uma chave: session:{phone}
    Estado, contexto e last_message_id são gravados juntos em um único SET,
    então uma transição nunca fica pela metade.
    """

    def __init__(
        self,
        redis_url: str,
        session_ttl_seconds: int = 0,
        redis_client: Redis = None,
    ) -> None:
        """
        Inicializa o gerenciador de sessões Redis.

        Args:
            redis_url: URL de conexão Redis (ex: redis://localhost:6379/0)
            session_ttl_seconds: TTL em segundos; 0 mantém a sessão sem expiração
            redis_client: cliente já construído (testes)
        """
        self._redis = redis_client or Redis.from_url(redis_url, decode_responses=False)
        self._session_ttl_seconds = session_ttl_seconds

        # Testar conexão
        try:
            self._redis.ping()
            logger.info(
                f"RedisSessionManager inicializado: redis_url={redis_url}, "
                f"ttl={session_ttl_seconds}s"
            )
        except RedisError as e:
            logger.error(f"Erro ao conectar ao Redis: {e}")
            raise

    @staticmethod
    def _key(phone: str) -> str:
        return f"session:{phone}"

    def _serialize_state(self, state: ConversationState) -> bytes:
        return json.dumps(state.to_dict(), ensure_ascii=False).encode("utf-8")

    def _deserialize_state(self, data: bytes) -> ConversationState:
        return ConversationState.from_dict(json.loads(data.decode("utf-8")))

    def get_or_create(self, phone: str) -> ConversationState:
        """
        Recupera uma sessão existente ou cria uma nova em IDLE.
        """
        key = self._key(phone)

        try:
            data = self._redis.get(key)
            if data:
                state = self._deserialize_state(data)
                logger.debug(
                    f"Sessão recuperada do Redis: phone={phone}, step={state.step.value}"
                )
                return state

            logger.debug(f"Nova sessão criada: phone={phone}")
            return ConversationState(phone=phone)
        except RedisError as e:
            logger.error(f"Erro ao recuperar sessão do Redis: phone={phone}, error={e}")
            # Em caso de erro, criar sessão temporária em memória
            # (fallback para não quebrar o fluxo)
            logger.warning(f"Usando sessão temporária em memória para phone={phone}")
            return ConversationState(phone=phone)

    def save_session(self, state: ConversationState) -> None:
        """
        Salva uma sessão no Redis (com TTL quando configurado).
        """
        key = self._key(state.phone)

        try:
            data = self._serialize_state(state)
            if self._session_ttl_seconds > 0:
                self._redis.setex(key, self._session_ttl_seconds, data)
            else:
                self._redis.set(key, data)

            logger.debug(
                f"Sessão salva no Redis: phone={state.phone}, step={state.step.value}, "
                f"last_message_id={state.last_message_id}"
            )
        except RedisError as e:
            logger.error(f"Erro ao salvar sessão no Redis: phone={state.phone}, error={e}")
            # Não relançar erro para não quebrar o fluxo
            # A sessão será recriada na próxima chamada

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError as e:
            logger.warning(f"Redis health check falhou: {e}")
            return False
