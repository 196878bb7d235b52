"""Object storage for originals and derived variants.

Two logical containers exist: ``private`` holds uploaded originals and is never
served to clients, ``public`` holds derived variants behind the CDN. Backends
translate their own failures into :mod:`medialink.core.errors` kinds here and
nowhere else.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Literal, Protocol, TypeVar
from urllib.parse import quote, unquote, urlencode, urlsplit

import anyio

from medialink.core.config import Settings
from medialink.core.errors import (
    BadPurposeError,
    ConfigError,
    ForbiddenError,
    NotFoundError,
    TransientError,
    UnsupportedMediaError,
)
from medialink.models.media import IMAGE_PURPOSES, VIDEO_RENDITIONS, MediaPurpose, MediaType

logger = logging.getLogger(__name__)

Container = Literal["private", "public"]
PRIVATE: Container = "private"
PUBLIC: Container = "public"

PUBLIC_CACHE_CONTROL = "public, max-age=31536000, immutable"
PRIVATE_CACHE_CONTROL = "no-cache"

MIME_ALIASES = {"image/jpg": "image/jpeg"}
MIME_EXTENSIONS: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
}
MIME_MEDIA_TYPES: dict[str, MediaType] = {
    mime: (MediaType.image if mime.startswith("image/") else MediaType.video) for mime in MIME_EXTENSIONS
}

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")
_BLOB_NAME_RE = re.compile(
    r"^(?P<prefix>image|video)_(?P<media_id>[0-9a-f]+)"
    r"(?:_(?P<purpose>thumb|feed|full|480p|720p))?"
    r"_v(?P<version>[1-9][0-9]*)\.(?P<ext>[a-z0-9]+)$"
)

T = TypeVar("T")


def normalize_mime(mime: str | None) -> str:
    value = (mime or "").split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(value, value)


def media_type_for_mime(mime: str | None) -> MediaType:
    normalized = normalize_mime(mime)
    media_type = MIME_MEDIA_TYPES.get(normalized)
    if media_type is None:
        raise UnsupportedMediaError(f"Unsupported media type: {mime!r}")
    return media_type


def extension_for_mime(mime: str | None) -> str:
    normalized = normalize_mime(mime)
    ext = MIME_EXTENSIONS.get(normalized)
    if ext is None:
        raise UnsupportedMediaError(f"Unsupported media type: {mime!r}")
    return ext


def original_blob_name(media_type: MediaType, media_id: str, version: int, ext: str) -> str:
    return f"{media_type.value}_{media_id}_v{int(version)}.{ext}"


def variant_blob_name(prefix: MediaType, media_id: str, purpose: MediaPurpose, version: int) -> str:
    if purpose in IMAGE_PURPOSES:
        ext = "webp"
    elif purpose in VIDEO_RENDITIONS:
        ext = "mp4"
    else:
        raise BadPurposeError(f"{purpose.value} has no blob of its own")
    return f"{prefix.value}_{media_id}_{purpose.value}_v{int(version)}.{ext}"


def variant_names_for(media_type: MediaType, media_id: str, version: int) -> list[str]:
    """Every variant blob a descriptor of ``media_type`` can own at ``version``.

    Video posters are image renditions of the first frame, stored under the
    ``image`` prefix with the video's media id.
    """
    names = [variant_blob_name(MediaType.image, media_id, purpose, version) for purpose in IMAGE_PURPOSES]
    if media_type == MediaType.video:
        names.extend(variant_blob_name(MediaType.video, media_id, purpose, version) for purpose in VIDEO_RENDITIONS)
    return names


@dataclass(frozen=True, slots=True)
class BlobName:
    prefix: MediaType
    media_id: str
    purpose: MediaPurpose | None
    version: int
    ext: str


def parse_blob_name(name: str) -> BlobName | None:
    match = _BLOB_NAME_RE.match(name or "")
    if not match:
        return None
    purpose = match.group("purpose")
    return BlobName(
        prefix=MediaType(match.group("prefix")),
        media_id=match.group("media_id"),
        purpose=MediaPurpose(purpose) if purpose else None,
        version=int(match.group("version")),
        ext=match.group("ext"),
    )


def blob_name_from_url(url: str) -> str:
    path = urlsplit(url or "").path
    return unquote(path.rsplit("/", 1)[-1])


@dataclass(frozen=True, slots=True)
class SignedUrl:
    url: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class BlobProperties:
    size: int
    content_type: str | None
    cache_control: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BlobObject:
    data: bytes
    content_type: str | None
    metadata: dict[str, str] = field(default_factory=dict)


class BlobBackend(Protocol):
    async def mint_write_url(self, blob_name: str, mime: str, ttl_seconds: int) -> SignedUrl: ...

    async def upload(
        self,
        container: Container,
        name: str,
        data: bytes,
        mime: str,
        metadata: dict[str, str] | None = None,
    ) -> str: ...

    async def download(self, container: Container, name: str) -> BlobObject: ...

    async def delete(self, container: Container, name: str) -> bool: ...

    async def exists(self, container: Container, name: str) -> bool: ...

    async def properties(self, container: Container, name: str) -> BlobProperties | None: ...

    async def list(self, container: Container, prefix: str = "", max_results: int = 100) -> list[str]: ...

    def url_for(self, container: Container, name: str) -> str: ...


def _cache_control_for(container: Container) -> str:
    return PUBLIC_CACHE_CONTROL if container == PUBLIC else PRIVATE_CACHE_CONTROL


def _check_name(name: str) -> str:
    if not _SAFE_NAME_RE.match(name or "") or ".." in name:
        raise NotFoundError(f"Invalid blob name: {name!r}")
    return name


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _ThreadedBackend:
    timeout_seconds: float

    async def _run(self, func: Callable[[], T], *, op: str) -> T:
        try:
            with anyio.fail_after(self.timeout_seconds):
                return await anyio.to_thread.run_sync(func, abandon_on_cancel=True)
        except TimeoutError as exc:
            raise TransientError(f"Blob {op} timed out") from exc


class LocalBlobBackend(_ThreadedBackend):
    """Filesystem containers with HMAC-signed write URLs served by ``PUT /blobs/private``."""

    def __init__(
        self,
        root: str | Path,
        *,
        public_base_url: str,
        signing_key: str | None,
        cdn_endpoint: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_key = signing_key or None
        self.cdn_endpoint = (cdn_endpoint or "").rstrip("/") or None
        self.timeout_seconds = timeout_seconds

    def container_path(self, container: Container) -> Path:
        path = self.root / container
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _paths(self, container: Container, name: str) -> tuple[Path, Path]:
        base = self.container_path(container)
        safe = _check_name(name)
        return base / safe, base / ".meta" / f"{safe}.json"

    def _sign(self, blob_name: str, content_type: str, exp: int) -> str:
        if not self.signing_key:
            raise ConfigError("No signing key configured for upload URLs")
        message = f"w:{blob_name}:{content_type}:{exp}"
        return hmac.new(self.signing_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    async def mint_write_url(self, blob_name: str, mime: str, ttl_seconds: int) -> SignedUrl:
        _check_name(blob_name)
        expires_at = _now().replace(microsecond=0) + timedelta(seconds=int(ttl_seconds))
        exp = int(expires_at.timestamp())
        content_type = normalize_mime(mime)
        sig = self._sign(blob_name, content_type, exp)
        query = urlencode({"sp": "w", "ct": content_type, "exp": exp, "sig": sig})
        return SignedUrl(url=f"{self.public_base_url}/blobs/private/{quote(blob_name)}?{query}", expires_at=expires_at)

    def verify_signed_write(
        self,
        blob_name: str,
        *,
        content_type: str | None,
        sp: str | None,
        ct: str | None,
        exp: str | int | None,
        sig: str | None,
    ) -> None:
        if sp != "w":
            raise ForbiddenError("Signed URL does not grant write access")
        try:
            exp_ts = int(exp or 0)
        except (TypeError, ValueError) as exc:
            raise ForbiddenError("Malformed signed URL") from exc
        expected = self._sign(blob_name, normalize_mime(ct), exp_ts)
        if not hmac.compare_digest(expected, str(sig or "")):
            raise ForbiddenError("Signature mismatch")
        if exp_ts < int(_now().timestamp()):
            raise ForbiddenError("Signed URL expired")
        if normalize_mime(content_type) != normalize_mime(ct):
            raise ForbiddenError("Content-Type does not match the signed URL")

    async def accept_signed_write(
        self,
        blob_name: str,
        data: bytes,
        *,
        content_type: str | None,
        params: dict[str, Any],
    ) -> None:
        self.verify_signed_write(
            blob_name,
            content_type=content_type,
            sp=params.get("sp"),
            ct=params.get("ct"),
            exp=params.get("exp"),
            sig=params.get("sig"),
        )
        await self.upload(PRIVATE, blob_name, data, normalize_mime(content_type))

    def _write(self, container: Container, name: str, data: bytes, mime: str, metadata: dict[str, str]) -> None:
        path, meta_path = self._paths(container, name)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        temp = path.with_name(f".{path.name}.tmp")
        temp.write_bytes(data)
        temp.replace(path)
        meta = {"content_type": mime, "cache_control": _cache_control_for(container), "metadata": metadata}
        meta_path.write_text(json.dumps(meta, separators=(",", ":")), encoding="utf-8")

    async def upload(
        self,
        container: Container,
        name: str,
        data: bytes,
        mime: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        try:
            await self._run(partial(self._write, container, name, data, mime, dict(metadata or {})), op="upload")
        except OSError as exc:
            raise TransientError(f"Blob upload failed: {exc}") from exc
        return self.url_for(container, name)

    def _read_meta(self, meta_path: Path) -> dict[str, Any]:
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}

    def _read(self, container: Container, name: str) -> BlobObject:
        path, meta_path = self._paths(container, name)
        if not path.is_file():
            raise NotFoundError(f"Blob {container}/{name} does not exist")
        meta = self._read_meta(meta_path)
        return BlobObject(data=path.read_bytes(), content_type=meta.get("content_type"), metadata=meta.get("metadata") or {})

    async def download(self, container: Container, name: str) -> BlobObject:
        try:
            return await self._run(partial(self._read, container, name), op="download")
        except OSError as exc:
            raise TransientError(f"Blob download failed: {exc}") from exc

    def _delete(self, container: Container, name: str) -> bool:
        path, meta_path = self._paths(container, name)
        existed = path.is_file()
        path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        return existed

    async def delete(self, container: Container, name: str) -> bool:
        try:
            return await self._run(partial(self._delete, container, name), op="delete")
        except OSError as exc:
            raise TransientError(f"Blob delete failed: {exc}") from exc

    async def exists(self, container: Container, name: str) -> bool:
        return await self.properties(container, name) is not None

    def _stat(self, container: Container, name: str) -> BlobProperties | None:
        path, meta_path = self._paths(container, name)
        if not path.is_file():
            return None
        meta = self._read_meta(meta_path)
        return BlobProperties(
            size=path.stat().st_size,
            content_type=meta.get("content_type"),
            cache_control=meta.get("cache_control"),
            metadata=meta.get("metadata") or {},
        )

    async def properties(self, container: Container, name: str) -> BlobProperties | None:
        try:
            return await self._run(partial(self._stat, container, name), op="properties")
        except OSError as exc:
            raise TransientError(f"Blob properties failed: {exc}") from exc

    def _list(self, container: Container, prefix: str, max_results: int) -> list[str]:
        base = self.container_path(container)
        names = sorted(p.name for p in base.iterdir() if p.is_file() and not p.name.startswith("."))
        return [name for name in names if name.startswith(prefix)][: max(0, int(max_results))]

    async def list(self, container: Container, prefix: str = "", max_results: int = 100) -> list[str]:
        return await self._run(partial(self._list, container, prefix, max_results), op="list")

    def url_for(self, container: Container, name: str) -> str:
        if container == PUBLIC and self.cdn_endpoint:
            return f"{self.cdn_endpoint}/{quote(name)}"
        return f"{self.public_base_url}/blobs/{container}/{quote(name)}"


class S3BlobBackend(_ThreadedBackend):
    """S3-compatible storage through ``boto3``; one bucket per container."""

    def __init__(self, settings: Settings, *, client: Any | None = None) -> None:
        import boto3
        from botocore.config import Config

        self.buckets: dict[Container, str] = {
            PRIVATE: settings.private_container,
            PUBLIC: settings.public_container,
        }
        self.endpoint_url = (settings.s3_endpoint_url or "").rstrip("/") or None
        self.region = settings.s3_region
        self.cdn_endpoint = (settings.cdn_endpoint or "").rstrip("/") or None
        self.timeout_seconds = float(settings.blob_operation_timeout_seconds)
        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=settings.s3_region,
        )
        self._has_credentials = session.get_credentials() is not None
        self.client = client or session.client(
            "s3",
            endpoint_url=self.endpoint_url,
            config=Config(
                connect_timeout=self.timeout_seconds,
                read_timeout=self.timeout_seconds,
                retries={"max_attempts": 3, "mode": "standard"},
                signature_version="s3v4",
            ),
        )

    @staticmethod
    def _is_missing(exc: Exception) -> bool:
        response = getattr(exc, "response", None) or {}
        code = str((response.get("Error") or {}).get("Code") or "")
        return code in {"404", "NoSuchKey", "NotFound"}

    async def _call(self, func: Callable[[], T], *, op: str) -> T:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return await self._run(func, op=op)
        except ClientError as exc:
            if self._is_missing(exc):
                raise NotFoundError(f"Blob not found during {op}") from exc
            raise TransientError(f"Blob {op} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise TransientError(f"Blob {op} failed: {exc}") from exc

    async def mint_write_url(self, blob_name: str, mime: str, ttl_seconds: int) -> SignedUrl:
        if not self._has_credentials:
            raise ConfigError("No S3 credentials available to sign upload URLs")
        _check_name(blob_name)
        expires_at = _now().replace(microsecond=0) + timedelta(seconds=int(ttl_seconds))
        url = await self._call(
            partial(
                self.client.generate_presigned_url,
                "put_object",
                Params={"Bucket": self.buckets[PRIVATE], "Key": blob_name, "ContentType": normalize_mime(mime)},
                ExpiresIn=int(ttl_seconds),
                HttpMethod="PUT",
            ),
            op="sign",
        )
        return SignedUrl(url=url, expires_at=expires_at)

    async def upload(
        self,
        container: Container,
        name: str,
        data: bytes,
        mime: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        await self._call(
            partial(
                self.client.put_object,
                Bucket=self.buckets[container],
                Key=_check_name(name),
                Body=data,
                ContentType=mime,
                CacheControl=_cache_control_for(container),
                Metadata=dict(metadata or {}),
            ),
            op="upload",
        )
        return self.url_for(container, name)

    async def download(self, container: Container, name: str) -> BlobObject:
        def _get() -> BlobObject:
            response = self.client.get_object(Bucket=self.buckets[container], Key=_check_name(name))
            body = response["Body"]
            try:
                data = body.read()
            finally:
                body.close()
            return BlobObject(data=data, content_type=response.get("ContentType"), metadata=response.get("Metadata") or {})

        return await self._call(_get, op="download")

    async def delete(self, container: Container, name: str) -> bool:
        existed = await self.exists(container, name)
        if existed:
            await self._call(
                partial(self.client.delete_object, Bucket=self.buckets[container], Key=_check_name(name)), op="delete"
            )
        return existed

    async def exists(self, container: Container, name: str) -> bool:
        return await self.properties(container, name) is not None

    async def properties(self, container: Container, name: str) -> BlobProperties | None:
        try:
            head = await self._call(
                partial(self.client.head_object, Bucket=self.buckets[container], Key=_check_name(name)), op="head"
            )
        except NotFoundError:
            return None
        return BlobProperties(
            size=int(head.get("ContentLength") or 0),
            content_type=head.get("ContentType"),
            cache_control=head.get("CacheControl"),
            metadata=head.get("Metadata") or {},
        )

    async def list(self, container: Container, prefix: str = "", max_results: int = 100) -> list[str]:
        response = await self._call(
            partial(
                self.client.list_objects_v2,
                Bucket=self.buckets[container],
                Prefix=prefix,
                MaxKeys=max(1, int(max_results)),
            ),
            op="list",
        )
        return [item["Key"] for item in response.get("Contents") or []]

    def url_for(self, container: Container, name: str) -> str:
        if container == PUBLIC and self.cdn_endpoint:
            return f"{self.cdn_endpoint}/{quote(name)}"
        bucket = self.buckets[container]
        if self.endpoint_url:
            return f"{self.endpoint_url}/{bucket}/{quote(name)}"
        region = self.region or "us-east-1"
        return f"https://{bucket}.s3.{region}.amazonaws.com/{quote(name)}"


def build_blob_backend(settings: Settings) -> BlobBackend:
    if settings.blob_backend == "s3":
        return S3BlobBackend(settings)
    return LocalBlobBackend(
        settings.blob_local_root,
        public_base_url=settings.public_base_url,
        signing_key=settings.blob_signing_key or settings.secret_key,
        cdn_endpoint=settings.cdn_endpoint,
        timeout_seconds=float(settings.blob_operation_timeout_seconds),
    )
