"""
Storage Service: S3/Minio uploads, image variants and guarded downloads
"""
import io
import ipaddress
import json
import socket
import uuid
from typing import Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
import httpx
from PIL import Image, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool
import structlog

from roastme.core.config import settings
from roastme.core.errors import ErrorCode, StorageError
from roastme.models.dto import GeneratedImages

logger = structlog.get_logger()

# Cache for bucket existence check
_bucket_verified = False

# In-process object store used when storage_provider == "mock"
_mock_objects: dict[str, tuple[bytes, str]] = {}

# Public hosts we fetch images from besides our own storage (SSRF protection)
ALLOWED_IMAGE_DOMAINS = {
    "s3.amazonaws.com",
    "r2.cloudflarestorage.com",
    "supabase.co",
    "googleusercontent.com",
}

# Thumbnail and medium variants: (size, JPEG quality)
VARIANTS = {
    "thumbnail": ((150, 150), 80),
    "medium": ((400, 400), 85),
}

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def get_s3_client():
    """Get S3 client configured for Minio or AWS S3"""
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        config=Config(signature_version="s3v4"),
    )


async def ensure_bucket_exists():
    """Ensure the bucket exists, create if not. Cached after first check."""
    global _bucket_verified

    if _bucket_verified:
        return

    client = get_s3_client()
    try:
        client.head_bucket(Bucket=settings.s3_bucket)
        _bucket_verified = True
    except ClientError:
        try:
            client.create_bucket(Bucket=settings.s3_bucket)
            # Public read so character pages and OG crawlers can load images
            policy = {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": "*",
                        "Action": "s3:GetObject",
                        "Resource": f"arn:aws:s3:::{settings.s3_bucket}/*",
                    }
                ],
            }
            client.put_bucket_policy(Bucket=settings.s3_bucket, Policy=json.dumps(policy))
            logger.info("Created bucket", bucket=settings.s3_bucket)
            _bucket_verified = True
        except ClientError as e:
            logger.error("Failed to create bucket", error=str(e))
            raise StorageError(f"Failed to create bucket: {e}")


def extension_for(mime_type: str) -> str:
    return EXTENSIONS.get((mime_type or "").lower(), "png")


def public_url(key: str) -> str:
    return f"{settings.s3_public_url}/{key}"


def key_from_url(url: str) -> Optional[str]:
    """Object key for a URL inside our bucket, None for foreign URLs"""
    prefix = f"{settings.s3_public_url}/"
    if url.startswith(prefix):
        return url[len(prefix):]
    return None


def _host_port(parsed) -> tuple[str, Optional[int]]:
    default_port = 443 if parsed.scheme == "https" else 80
    return (parsed.hostname or "").lower(), parsed.port or default_port


def is_url_allowed(url: str) -> bool:
    """
    Check that a URL points at a host we are willing to fetch from:
    our own storage endpoints (exact host and port), an allow-listed
    image domain, or loopback when running in debug mode.
    """
    try:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            return False

        hostname = (parsed.hostname or "").lower()
        if not hostname:
            return False

        own_endpoints = {
            _host_port(urlparse(endpoint))
            for endpoint in (settings.s3_endpoint, settings.s3_public_url)
            if endpoint
        }
        if _host_port(parsed) in own_endpoints:
            return True

        for domain in ALLOWED_IMAGE_DOMAINS:
            if hostname == domain or hostname.endswith(f".{domain}"):
                return True

        if not settings.debug:
            return False

        # Debug only: local dev servers
        try:
            ip = ipaddress.ip_address(socket.gethostbyname(hostname))
        except (socket.gaierror, ValueError):
            logger.warning("DNS resolution failed for URL validation", hostname=hostname)
            return False
        return ip.is_loopback
    except ValueError:
        return False


async def check_url_allowed(url: str) -> bool:
    """is_url_allowed off the event loop (it may resolve DNS)"""
    return await run_in_threadpool(is_url_allowed, url)


def make_variant(data: bytes, size: tuple[int, int], quality: int) -> bytes:
    """Cover-resize to exactly `size` and encode as JPEG"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img).convert("RGB")
            fitted = ImageOps.fit(img, size, method=Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            fitted.save(buffer, format="JPEG", quality=quality, optimize=True)
            return buffer.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise StorageError(f"invalid_image: cannot decode image ({e})")


def sniff_image(data: bytes) -> Optional[str]:
    """Return the MIME type Pillow detects, or None when data is not an image"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            return Image.MIME.get(img.format)
    except (UnidentifiedImageError, OSError, SyntaxError):
        return None


class StorageService:
    """Object storage facade"""

    async def upload_bytes(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        """
        Upload bytes with a custom key

        Returns:
            Public URL of uploaded file
        """
        if settings.storage_provider == "mock":
            _mock_objects[key] = (data, content_type)
            return public_url(key)

        await ensure_bucket_exists()

        try:
            s3_client = get_s3_client()
            s3_client.put_object(
                Bucket=settings.s3_bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000",
            )
        except ClientError as e:
            logger.error("Failed to upload to S3", key=key, error=str(e))
            raise StorageError(f"Failed to upload: {e}")

        return public_url(key)

    async def upload_original(
        self, user_id: str, data: bytes, content_type: str
    ) -> str:
        key = f"uploads/{user_id}/{uuid.uuid4().hex}.{extension_for(content_type)}"
        return await self.upload_bytes(data, key, content_type)

    async def upload_generated(
        self, character_id: str, data: bytes, content_type: str = "image/png"
    ) -> GeneratedImages:
        """Upload the generated image plus thumbnail and medium variants"""
        base = f"characters/{character_id}"
        original = await self.upload_bytes(
            data, f"{base}/original.{extension_for(content_type)}", content_type
        )

        urls = {}
        for name, (size, quality) in VARIANTS.items():
            try:
                variant = make_variant(data, size, quality)
                urls[name] = await self.upload_bytes(
                    variant, f"{base}/{name}.jpg", "image/jpeg"
                )
            except StorageError as e:
                # a missing variant falls back to the original
                logger.warning(
                    "Variant upload failed", character_id=character_id, variant=name, error=str(e)
                )
                urls[name] = original

        return GeneratedImages(
            original=original, thumbnail=urls["thumbnail"], medium=urls["medium"]
        )

    async def download(self, url: str, max_bytes: Optional[int] = None) -> tuple[bytes, str]:
        """
        Fetch an image from our bucket or an allow-listed host

        Returns:
            (bytes, content type)
        """
        max_bytes = max_bytes or settings.max_upload_bytes
        key = key_from_url(url)

        if key is not None and settings.storage_provider == "mock":
            if key not in _mock_objects:
                raise StorageError(f"Object not found: {key}", ErrorCode.STORAGE_FETCH_FAILED)
            return _mock_objects[key]

        if key is not None:
            try:
                obj = get_s3_client().get_object(Bucket=settings.s3_bucket, Key=key)
                return obj["Body"].read(), obj.get("ContentType", "image/jpeg")
            except ClientError as e:
                raise StorageError(f"Failed to fetch {key}: {e}", ErrorCode.STORAGE_FETCH_FAILED)

        if not await check_url_allowed(url):
            raise StorageError(f"URL not allowed: {url[:100]}", ErrorCode.STORAGE_FETCH_FAILED)

        try:
            async with httpx.AsyncClient(timeout=30, follow_redirects=False) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise StorageError(
                            f"Failed to download image: {response.status_code}",
                            ErrorCode.STORAGE_FETCH_FAILED,
                        )
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > max_bytes:
                        raise StorageError("image_too_large", ErrorCode.STORAGE_FETCH_FAILED)

                    buffer = bytearray()
                    async for chunk in response.aiter_bytes():
                        buffer.extend(chunk)
                        if len(buffer) > max_bytes:
                            raise StorageError("image_too_large", ErrorCode.STORAGE_FETCH_FAILED)
                    content_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        except httpx.HTTPError as e:
            raise StorageError(f"network error fetching image: {e}", ErrorCode.STORAGE_FETCH_FAILED)

        return bytes(buffer), content_type


# Singleton instance
storage_service = StorageService()
