import os
import time
import hashlib
import hmac
from typing import Optional
from urllib.parse import quote, urlencode

from botocore.exceptions import BotoCoreError, ClientError

from core.config import s3, R2_BUCKET, R2_PUBLIC_BASE_URL, STATIC_DIR, GATEWAY_KEY, logger


class StorageError(Exception):
    pass


def normalize_key(key: str) -> str:
    k = (key or "").replace("\\", "/").strip().lstrip("/")
    parts = [p for p in k.split("/") if p not in ("", ".")]
    if not parts or any(p == ".." for p in parts):
        raise StorageError(f"invalid storage key: {key!r}")
    return "/".join(parts)


def _local_path(key: str) -> str:
    return os.path.join(STATIC_DIR, *normalize_key(key).split("/"))


def upload_bytes(key: str, data: bytes, content_type: str = "image/jpeg") -> str:
    """Store bytes under key and return the normalized key."""
    key = normalize_key(key)
    if not s3 or not R2_BUCKET:
        local_path = _local_path(key)
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "wb") as f:
            f.write(data)
        logger.info(f"Saved locally: {local_path}")
        return key

    bucket = s3.Bucket(R2_BUCKET)
    try:
        bucket.put_object(Key=key, Body=data, ContentType=content_type, ACL="private", CacheControl="public, max-age=604800")
    except (BotoCoreError, ClientError) as ex:
        raise StorageError(f"upload failed for {key}: {ex}") from ex
    return key


def read_bytes_key(key: str) -> Optional[bytes]:
    try:
        if s3 and R2_BUCKET:
            obj = s3.Object(R2_BUCKET, normalize_key(key))
            try:
                return obj.get()["Body"].read()
            except ClientError as ce:
                # Treat missing object as None without warning noise
                if ce.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                    return None
                raise
        path = _local_path(key)
        if not os.path.isfile(path):
            return None
        with open(path, "rb") as f:
            return f.read()
    except Exception as ex:
        logger.warning(f"read_bytes_key failed for {key}: {ex}")
        return None


def delete_key(key: str) -> bool:
    try:
        if s3 and R2_BUCKET:
            s3.Object(R2_BUCKET, normalize_key(key)).delete()
            return True
        path = _local_path(key)
        if os.path.isfile(path):
            os.remove(path)
            return True
        return False
    except Exception as ex:
        logger.warning(f"delete_key failed for {key}: {ex}")
        return False


def get_public_url(key: str) -> str:
    key = normalize_key(key)
    if R2_PUBLIC_BASE_URL:
        return f"{R2_PUBLIC_BASE_URL}/{quote(key, safe='/')}"
    return f"/static/{quote(key, safe='/')}"


def _local_signature(key: str, expires: int) -> str:
    msg = f"{key}|{int(expires)}".encode("utf-8")
    return hmac.new(GATEWAY_KEY.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_local_signature(key: str, expires: int, sig: str, now: Optional[float] = None) -> bool:
    try:
        key = normalize_key(key)
    except StorageError:
        return False
    if int(expires) < int(now if now is not None else time.time()):
        return False
    return hmac.compare_digest(_local_signature(key, expires), sig or "")


def get_presigned_url(key: str, expires_in: int = 3600) -> str:
    """Time-limited GET url: bucket presign when storage is configured,
    otherwise an HMAC-signed link served by /api/gallery/signed/<key>.
    """
    key = normalize_key(key)
    if s3 and R2_BUCKET:
        try:
            return s3.meta.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": R2_BUCKET, "Key": key},
                ExpiresIn=int(expires_in),
            )
        except (BotoCoreError, ClientError) as ex:
            raise StorageError(f"presign failed for {key}: {ex}") from ex

    expires = int(time.time()) + int(expires_in)
    qs = urlencode({"expires": expires, "sig": _local_signature(key, expires)})
    return f"/api/gallery/signed/{quote(key, safe='/')}?{qs}"
