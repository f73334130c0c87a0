from __future__ import annotations

import logging
import os
import re
import time
from datetime import datetime
from pathlib import PurePosixPath

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.domain.errors import (
    DuplicateError,
    InvalidPayloadError,
    NotFoundError,
    PayloadTooLargeError,
    StorageUnavailableError,
)
from app.domain.models import EvidenceUploadRead, Task, UploadInstructionsRead, UploadSlotRead
from app.domain.permissions import OPERATOR_ONLY, OWNER_OR_OPERATOR
from app.domain.principal import Principal
from app.infra.events import EventBus
from app.services.access_gate import require_assignment, require_role, task_visibility
from app.services.evidence_storage import (
    EvidenceObjectExistsError,
    EvidenceStore,
    EvidenceStoreError,
)

logger = logging.getLogger(__name__)

MAX_EVIDENCE_BYTES = 10 * 1024 * 1024
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp"})
SLOT_CONTENT_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def upload_url_ttl_seconds() -> int:
    raw = os.getenv("EVIDENCE_UPLOAD_URL_TTL_SECONDS", "3600").strip()
    return int(raw) if raw.isdigit() and int(raw) > 0 else 3600


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def safe_file_name(file_name: str) -> str:
    base = PurePosixPath(file_name.replace("\\", "/")).name
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned or "photo"


def file_extension(file_name: str | None) -> str | None:
    if not file_name:
        return None
    suffix = PurePosixPath(file_name).suffix.lower().lstrip(".")
    return suffix or None


def is_image(mime_type: str | None, file_name: str | None) -> bool:
    if mime_type and mime_type.lower().startswith("image/"):
        return True
    return file_extension(file_name) in IMAGE_EXTENSIONS


class EvidenceService:
    def __init__(self, engine: Engine, event_bus: EventBus, store: EvidenceStore) -> None:
        self._engine = engine
        self._events = event_bus
        self._store = store

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def request_upload_slot(
        self,
        principal: Principal,
        file_name: str,
        content_type: str | None = None,
    ) -> UploadSlotRead:
        require_role(principal, OWNER_OR_OPERATOR)
        normalized_type = content_type.strip().lower() if content_type else None
        if normalized_type and normalized_type not in SLOT_CONTENT_TYPES:
            raise InvalidPayloadError(
                f"invalid file type {content_type}; allowed: {', '.join(sorted(SLOT_CONTENT_TYPES))}"
            )

        role_segment = principal.role.value.lower()
        path = f"verification-photos/{role_segment}/{principal.id}/{_epoch_ms()}-{safe_file_name(file_name)}"
        try:
            signed = self._store.issue_signed_write_url(path, upload_url_ttl_seconds())
        except EvidenceStoreError as exc:
            logger.warning("upload slot request failed", extra={"path": path, "actor_id": principal.id})
            raise StorageUnavailableError(f"evidence storage unavailable: {exc}") from exc

        expires_at: datetime = signed.expires_at
        return UploadSlotRead(
            upload_url=signed.write_url,
            public_url=signed.read_url,
            file_path=signed.path,
            expires_at=expires_at,
            instructions=UploadInstructionsRead(
                method="PUT",
                content_type=normalized_type,
                note="Upload the file with PUT to upload_url, then submit public_url as photo_url.",
            ),
        )

    def upload_evidence(
        self,
        principal: Principal,
        task_id: str,
        content: bytes,
        mime_type: str | None,
        file_name: str | None,
    ) -> EvidenceUploadRead:
        operator = require_role(principal, OPERATOR_ONLY)
        with self._session() as session:
            task = session.exec(select(Task).where(Task.id == task_id).where(task_visibility(operator))).first()
            if task is None:
                raise NotFoundError("task not found or not assigned to you")
            require_assignment(operator, task)

        if not is_image(mime_type, file_name):
            raise InvalidPayloadError("only image files are allowed")
        if not content:
            raise InvalidPayloadError("uploaded file is empty")
        if len(content) > MAX_EVIDENCE_BYTES:
            raise PayloadTooLargeError(f"file too large; maximum size is {MAX_EVIDENCE_BYTES // (1024 * 1024)} MiB")

        extension = file_extension(file_name)
        if extension not in IMAGE_EXTENSIONS:
            extension = "jpg"
        resolved_type = (
            mime_type
            if mime_type and mime_type.lower().startswith("image/")
            else f"image/{'jpeg' if extension == 'jpg' else extension}"
        )
        path = f"task-completions/{task_id}_{operator.id}_{_epoch_ms()}.{extension}"
        try:
            photo_url = self._store.put_object(path, content, resolved_type, overwrite=False)
        except EvidenceObjectExistsError as exc:
            raise DuplicateError("evidence object already exists; retry the upload") from exc
        except EvidenceStoreError as exc:
            logger.warning("evidence upload failed", extra={"task_id": task_id, "actor_id": operator.id})
            raise StorageUnavailableError(f"evidence storage unavailable: {exc}") from exc

        # No task row changes here, so the event commits on its own.
        self._events.publish_dict(
            "evidence.uploaded",
            task.tenant_id,
            {"task_id": task_id, "file_path": path, "size_bytes": len(content)},
            actor_id=operator.id,
        )
        logger.info(
            "evidence uploaded",
            extra={"task_id": task_id, "actor_id": operator.id, "file_path": path, "size_bytes": len(content)},
        )
        return EvidenceUploadRead(photo_url=photo_url, file_path=path, size_bytes=len(content), mime_type=resolved_type)
