"""Durable storage for verification photographs.

Two backends implement the ``EvidenceStore`` protocol:

* ``LocalEvidenceStore`` keeps objects on disk and serves them (and accepts
  signed direct uploads) through the ``/api/evidence/objects`` routes.
* ``SupabaseEvidenceStore`` talks to the Supabase Storage REST API.

Objects are never overwritten unless ``overwrite=True`` is passed explicitly.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Any, Protocol
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

import httpx
import jwt

logger = logging.getLogger(__name__)

LOCAL_OBJECT_ROUTE = "/api/evidence/objects/"


class EvidenceStoreError(Exception):
    pass


class EvidenceStoreUnavailableError(EvidenceStoreError):
    pass


class EvidenceObjectExistsError(EvidenceStoreError):
    pass


class EvidenceObjectNotFoundError(EvidenceStoreError):
    pass


class InvalidSignatureError(EvidenceStoreError):
    pass


@dataclass(frozen=True)
class SignedWrite:
    path: str
    write_url: str
    read_url: str
    expires_at: datetime


class EvidenceStore(Protocol):
    def issue_signed_write_url(self, path: str, ttl_seconds: int) -> SignedWrite: ...

    def put_object(self, path: str, content: bytes, mime_type: str, *, overwrite: bool = False) -> str: ...

    def get_public_url(self, path: str) -> str: ...

    def delete_object(self, path: str) -> None: ...

    def is_trusted_url(self, url: str) -> bool: ...

    def close(self) -> None: ...


def normalize_object_path(path: str) -> str:
    key_path = PurePosixPath(path)
    if key_path.is_absolute() or ".." in key_path.parts:
        raise EvidenceStoreError("invalid object path")
    if not key_path.parts:
        raise EvidenceStoreError("object path is empty")
    return key_path.as_posix()


def _has_prefix(url: str, prefix: str) -> bool:
    """True when ``url`` names a single object below ``prefix``."""
    if not url.startswith(prefix):
        return False
    if "?" in url or "#" in url:
        return False
    object_path = unquote(urlsplit(url).path[len(urlsplit(prefix).path) :])
    if not object_path.strip("/"):
        return False
    return ".." not in PurePosixPath(object_path).parts


def _token_expiry(signed_path: str) -> datetime | None:
    # Signed upload tokens are JWTs; their exp claim is the authoritative expiry.
    token = parse_qs(urlsplit(signed_path).query).get("token", [""])[0]
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    return datetime.fromtimestamp(exp, tz=UTC) if isinstance(exp, int | float) else None


class LocalEvidenceStore:
    def __init__(self, root_dir: Path, *, public_base_url: str, signing_secret: str) -> None:
        self._root_dir = root_dir
        self._root_dir.mkdir(parents=True, exist_ok=True)
        self._public_prefix = f"{public_base_url.rstrip('/')}{LOCAL_OBJECT_ROUTE}"
        self._signing_secret = signing_secret.encode()

    def _safe_object_path(self, path: str) -> Path:
        normalized = normalize_object_path(path)
        return self._root_dir / Path(*PurePosixPath(normalized).parts)

    def _signature(self, path: str, expires: int) -> str:
        message = f"{normalize_object_path(path)}:{expires}".encode()
        return hmac.new(self._signing_secret, message, hashlib.sha256).hexdigest()

    def issue_signed_write_url(self, path: str, ttl_seconds: int) -> SignedWrite:
        expires_at = datetime.now(UTC) + timedelta(seconds=ttl_seconds)
        expires = int(expires_at.timestamp())
        read_url = self.get_public_url(path)
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return SignedWrite(path=path, write_url=f"{read_url}?{query}", read_url=read_url, expires_at=expires_at)

    def verify_signed_write(self, path: str, expires: int, signature: str) -> None:
        if expires < int(datetime.now(UTC).timestamp()):
            raise InvalidSignatureError("upload url expired")
        if not hmac.compare_digest(self._signature(path, expires), signature):
            raise InvalidSignatureError("invalid upload signature")

    def put_object(self, path: str, content: bytes, mime_type: str, *, overwrite: bool = False) -> str:
        target = self._safe_object_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with target.open("wb" if overwrite else "xb") as handle:
                handle.write(content)
        except FileExistsError as exc:
            raise EvidenceObjectExistsError(f"object already exists: {path}") from exc
        except OSError as exc:
            raise EvidenceStoreUnavailableError("evidence storage write failed") from exc
        logger.info("evidence object stored", extra={"path": path, "size_bytes": len(content), "mime_type": mime_type})
        return self.get_public_url(path)

    def get_public_url(self, path: str) -> str:
        return f"{self._public_prefix}{quote(normalize_object_path(path), safe='/')}"

    def get_object_file(self, path: str) -> Path:
        target = self._safe_object_path(path)
        if not target.is_file():
            raise EvidenceObjectNotFoundError("object not found")
        return target

    def delete_object(self, path: str) -> None:
        self._safe_object_path(path).unlink(missing_ok=True)

    def is_trusted_url(self, url: str) -> bool:
        return _has_prefix(url, self._public_prefix)

    def close(self) -> None:
        return None


class SupabaseEvidenceStore:
    def __init__(
        self,
        *,
        base_url: str | None,
        api_key: str | None,
        bucket: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._bucket = bucket
        self._base_url = (base_url or "").rstrip("/")
        self._client: httpx.Client | None = None
        if not self._base_url or not api_key:
            logger.warning("supabase storage credentials not configured; evidence storage disabled")
            return
        self._client = httpx.Client(
            base_url=f"{self._base_url}/storage/v1",
            headers={"Authorization": f"Bearer {api_key}", "apikey": api_key},
            timeout=timeout_seconds,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def _public_prefix(self) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/"

    def _object_url(self, path: str) -> str:
        return f"{self._bucket}/{quote(normalize_object_path(path), safe='/')}"

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise EvidenceStoreUnavailableError("supabase storage not configured")
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise EvidenceStoreUnavailableError(f"supabase storage unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise EvidenceStoreUnavailableError(f"supabase storage error: HTTP {response.status_code}")
        return response

    def _raise_for_error(self, response: httpx.Response, path: str) -> None:
        if response.is_success:
            return
        body = response.text
        if response.status_code == 409 or "Duplicate" in body or '"409"' in body:
            raise EvidenceObjectExistsError(f"object already exists: {path}")
        if response.status_code == 404:
            raise EvidenceObjectNotFoundError(f"object not found: {path}")
        if response.status_code in {401, 403}:
            raise EvidenceStoreUnavailableError("supabase storage rejected credentials")
        raise EvidenceStoreError(f"supabase storage request failed: HTTP {response.status_code}")

    def issue_signed_write_url(self, path: str, ttl_seconds: int) -> SignedWrite:
        requested_at = datetime.now(UTC)
        response = self._request(
            "POST",
            f"/object/upload/sign/{self._object_url(path)}",
            json={"expiresIn": ttl_seconds, "upsert": False},
            headers={"x-upsert": "false"},
        )
        self._raise_for_error(response, path)
        data = response.json()
        signed_path = data.get("url") if isinstance(data, dict) else None
        if not isinstance(signed_path, str) or not signed_path:
            raise EvidenceStoreUnavailableError("supabase storage returned no signed url")
        return SignedWrite(
            path=path,
            write_url=f"{self._base_url}/storage/v1{signed_path}",
            read_url=self.get_public_url(path),
            expires_at=_token_expiry(signed_path) or requested_at + timedelta(seconds=ttl_seconds),
        )

    def put_object(self, path: str, content: bytes, mime_type: str, *, overwrite: bool = False) -> str:
        response = self._request(
            "POST",
            f"/object/{self._object_url(path)}",
            content=content,
            headers={
                "Content-Type": mime_type,
                "x-upsert": "true" if overwrite else "false",
                "cache-control": "max-age=3600",
            },
        )
        self._raise_for_error(response, path)
        logger.info("evidence object stored", extra={"path": path, "size_bytes": len(content), "mime_type": mime_type})
        return self.get_public_url(path)

    def get_public_url(self, path: str) -> str:
        if not self._base_url:
            raise EvidenceStoreUnavailableError("supabase storage not configured")
        return f"{self._public_prefix}{quote(normalize_object_path(path), safe='/')}"

    def delete_object(self, path: str) -> None:
        response = self._request(
            "DELETE",
            f"/object/{self._bucket}",
            json={"prefixes": [normalize_object_path(path)]},
        )
        self._raise_for_error(response, path)

    def is_trusted_url(self, url: str) -> bool:
        if not self._base_url:
            return False
        return _has_prefix(url, self._public_prefix)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def build_evidence_store() -> EvidenceStore:
    backend = os.getenv("EVIDENCE_STORAGE_BACKEND", "local").strip().lower()
    if backend == "local":
        return LocalEvidenceStore(
            Path(os.getenv("EVIDENCE_STORAGE_ROOT", "data/evidence")),
            public_base_url=os.getenv("EVIDENCE_PUBLIC_BASE_URL", "http://localhost:8000"),
            signing_secret=os.getenv("EVIDENCE_SIGNING_SECRET", "dev-evidence-secret-change-me"),
        )
    if backend == "supabase":
        timeout = os.getenv("SUPABASE_TIMEOUT_SECONDS", "10").strip()
        return SupabaseEvidenceStore(
            base_url=os.getenv("SUPABASE_URL"),
            api_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY"),
            bucket=os.getenv("VERIFICATION_PHOTOS_BUCKET", "verification-photos"),
            timeout_seconds=float(timeout) if timeout.replace(".", "", 1).isdigit() else 10.0,
        )
    raise EvidenceStoreError(f"unsupported evidence storage backend: {backend}")
