"""Blob store for uploaded media (Cloudflare R2 via the S3-compatible API)"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from crosspost.core.config import settings
from crosspost.services.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _encode_object_key_for_url(object_key: str) -> str:
    """URL-encode each path segment of an object key, keeping the slashes"""
    if not object_key:
        return ""
    return '/'.join(quote(segment, safe='') for segment in object_key.split('/'))


class BlobStore(ABC):
    """Where content bytes live. Publishers either read the bytes or hand the
    platform a public URL to fetch them from."""

    @abstractmethod
    async def read(self, object_key: str) -> bytes:
        """Return the object's bytes, raising FileNotFoundError if it does not exist"""

    @abstractmethod
    async def size(self, object_key: str) -> int:
        """Return the object's length in bytes, raising FileNotFoundError if it does not exist"""

    @abstractmethod
    def stream(self, object_key: str, start: int = 0,
               chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        """Yield the object's bytes from ``start`` onwards, one chunk at a time"""

    @abstractmethod
    def public_url(self, object_key: str) -> str:
        """Return a URL the platforms can fetch the object from without credentials"""


class R2Service(BlobStore):
    """R2 storage backed by boto3"""

    def __init__(self):
        """Initialize R2 service with configuration from settings"""
        if not settings.R2_ACCOUNT_ID or not settings.R2_ACCESS_KEY_ID or not settings.R2_SECRET_ACCESS_KEY:
            raise ConfigurationError(
                "R2 configuration is missing. Set R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, and R2_SECRET_ACCESS_KEY environment variables."
            )
        if not settings.R2_BUCKET_NAME:
            raise ConfigurationError("R2_BUCKET_NAME is not set. Set R2_BUCKET_NAME environment variable.")

        self.bucket = settings.R2_BUCKET_NAME
        self.endpoint_url = f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
        self.s3_client = boto3.client(
            's3',
            endpoint_url=self.endpoint_url,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            config=Config(signature_version='s3v4')
        )
        logger.info(f"R2Service initialized for bucket: {self.bucket}")

    def _storage_error(self, object_key: str, e: Exception) -> OSError:
        """Map a boto3 failure to FileNotFoundError or OSError"""
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', 'NotFound', '404'):
                logger.warning(f"Object not found in R2: {object_key}")
                return FileNotFoundError(f"Object not found: {object_key}")
            logger.error(f"Failed to read {object_key} from R2: {e}", exc_info=True)
            return OSError(f"Failed to read {object_key}: {error_code}")
        logger.error(f"Failed to read {object_key} from R2: {e}", exc_info=True)
        return OSError(f"Failed to read {object_key}: {type(e).__name__}")

    def _get_object_bytes(self, object_key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=object_key)
            return response['Body'].read()
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(object_key, e)

    def _get_object_size(self, object_key: str) -> int:
        try:
            return int(self.s3_client.head_object(Bucket=self.bucket, Key=object_key)['ContentLength'])
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(object_key, e)

    def _open_object(self, object_key: str, start: int):
        params = {'Bucket': self.bucket, 'Key': object_key}
        if start:
            params['Range'] = f"bytes={start}-"
        try:
            return self.s3_client.get_object(**params)['Body']
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(object_key, e)

    def _read_chunk(self, object_key: str, body, chunk_size: int) -> bytes:
        try:
            return body.read(chunk_size)
        except BotoCoreError as e:
            raise self._storage_error(object_key, e)

    async def read(self, object_key: str) -> bytes:
        if not object_key:
            raise ValueError("object_key cannot be empty")
        return await asyncio.to_thread(self._get_object_bytes, object_key)

    async def size(self, object_key: str) -> int:
        if not object_key:
            raise ValueError("object_key cannot be empty")
        return await asyncio.to_thread(self._get_object_size, object_key)

    async def stream(self, object_key: str, start: int = 0,
                     chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        """Ranged GET, read off the response body in bounded chunks"""
        if not object_key:
            raise ValueError("object_key cannot be empty")
        chunk_size = chunk_size or settings.UPLOAD_CHUNK_SIZE_BYTES
        body = await asyncio.to_thread(self._open_object, object_key, start)
        try:
            while True:
                chunk = await asyncio.to_thread(self._read_chunk, object_key, body, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    def generate_download_url(self, object_key: str, expires_in: Optional[int] = None) -> str:
        """Generate presigned URL for direct download from R2"""
        if not object_key:
            raise ValueError("object_key cannot be empty")
        expires_in = expires_in or settings.R2_PRESIGNED_URL_TTL
        return self.s3_client.generate_presigned_url(
            'get_object',
            Params={'Bucket': self.bucket, 'Key': object_key},
            ExpiresIn=expires_in
        )

    def public_url(self, object_key: str) -> str:
        # Custom domain first, presigned URL otherwise
        if settings.R2_PUBLIC_DOMAIN:
            return f"https://{settings.R2_PUBLIC_DOMAIN.rstrip('/')}/{_encode_object_key_for_url(object_key)}"
        return self.generate_download_url(object_key)


_r2_service = None


def get_r2_service() -> R2Service:
    """Get or create the shared R2 service (lazy initialization)"""
    global _r2_service
    if _r2_service is None:
        _r2_service = R2Service()
    return _r2_service
