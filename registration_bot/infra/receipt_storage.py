import logging
import os
from typing import Any, Optional
import boto3
from ..config import AppConfig

logger = logging.getLogger(__name__)


class LocalReceiptStorage:
    """
    Guarda comprovantes em disco. A URL pública assume que o diretório é
    servido em `receipts_public_base_url` (o app FastAPI monta /receipts).
    """

    def __init__(self, base_dir: str, public_base_url: str) -> None:
        self._base_dir = base_dir
        self._public_base_url = public_base_url.rstrip("/")

    def store(self, key: str, content: bytes, content_type: str = "application/pdf") -> str:
        path = os.path.join(self._base_dir, *key.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(content)
        logger.info(f"Comprovante salvo em disco: path={path}, size={len(content)}")
        return f"{self._public_base_url}/{key}"


class S3ReceiptStorage:
    def __init__(self, bucket: str, public_base_url: str = "", client: Any = None) -> None:
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._client = client or boto3.client("s3")

    def store(self, key: str, content: bytes, content_type: str = "application/pdf") -> str:
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=content,
            ContentType=content_type,
        )
        logger.info(f"Comprovante enviado ao S3: bucket={self._bucket}, key={key}, size={len(content)}")
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"https://{self._bucket}.s3.amazonaws.com/{key}"


def create_receipt_storage(config: AppConfig, s3_client: Optional[Any] = None):
    """
    S3 quando RECEIPTS_BUCKET está definido, senão diretório local.
    """
    if config.receipts_bucket:
        logger.info(f"Comprovantes no S3: bucket={config.receipts_bucket}")
        return S3ReceiptStorage(bucket=config.receipts_bucket, client=s3_client)
    logger.info(f"Comprovantes em disco: dir={config.receipts_dir}")
    return LocalReceiptStorage(config.receipts_dir, config.receipts_public_base_url)
