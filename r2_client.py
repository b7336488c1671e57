# r2_client.py
from functools import lru_cache
from typing import Optional

import boto3
from botocore.config import Config

from settings import settings

# --- R2 / S3 client ---------------------------------------------------------

# NOTE:
# - endpoint_url MUST be the S3 API endpoint (the cloudflarestorage.com host),
#   NOT the public/dev domain. Region must be "auto" and path-style is required.
_BUCKET = settings.r2_bucket
_PUBLIC_BASE = (settings.r2_public_base or "").rstrip("/")


def _normalized_endpoint() -> Optional[str]:
    endpoint = settings.r2_endpoint_url
    if not endpoint:
        return None
    # Normalize accidental trailing slashes or bucket suffixes
    endpoint = endpoint.rstrip("/")
    if _BUCKET and endpoint.endswith(f"/{_BUCKET}"):
        endpoint = endpoint[: - (len(_BUCKET) + 1)]
    return endpoint


@lru_cache(maxsize=1)
def _s3():
    return boto3.client(
        "s3",
        endpoint_url=_normalized_endpoint(),   # e.g. https://<account>.r2.cloudflarestorage.com
        aws_access_key_id=settings.r2_access_key_id or None,
        aws_secret_access_key=settings.r2_secret_access_key or None,
        region_name="auto",
        config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


def _public_or_signed_url(key: str, expires: int = 3600) -> str:
    """
    Prefer the configured public base (custom domain / r2.dev) for read URLs.
    Fall back to a presigned GET URL if no public base is set.
    """
    if _PUBLIC_BASE:
        return f"{_PUBLIC_BASE}/{key.lstrip('/')}"
    return _s3().generate_presigned_url(
        "get_object",
        Params={"Bucket": _BUCKET, "Key": key},
        ExpiresIn=expires,
    )


# --- API used by the app -----------------------------------------------------

def upload_bytes_and_get_url(
    data: bytes,
    *,
    key: str,
    content_type: str,
    expires: int = 3600,
) -> str:
    """
    Uploads bytes to R2 and returns the URL the client should use to fetch.
    If R2_PUBLIC_BASE is set, returns a public URL (no query string).
    Otherwise returns a time-limited presigned GET URL.
    """
    _s3().put_object(
        Bucket=_BUCKET,
        Key=key,
        Body=data,
        ContentType=content_type,
    )
    return _public_or_signed_url(key, expires=expires)


def key_from_public_url(url: str) -> Optional[str]:
    """Map a public R2 URL back to its object key, or None for foreign URLs."""
    if _PUBLIC_BASE and url.startswith(f"{_PUBLIC_BASE}/"):
        return url[len(_PUBLIC_BASE) + 1:]
    return None


def get_object_bytes(key: str) -> bytes:
    obj = _s3().get_object(Bucket=_BUCKET, Key=key)
    return obj["Body"].read()


def get_object_stream(key: str):
    """
    Returns (streaming_body, content_type) for the given key.
    Useful for the /files/{key} streaming route.
    """
    obj = _s3().get_object(Bucket=_BUCKET, Key=key)
    return obj["Body"], obj.get("ContentType", "application/octet-stream")
