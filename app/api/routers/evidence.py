from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse

from app.api.deps import get_evidence_store
from app.infra.audit import set_audit_context
from app.services.evidence_service import MAX_EVIDENCE_BYTES, is_image
from app.services.evidence_storage import (
    EvidenceObjectExistsError,
    EvidenceObjectNotFoundError,
    EvidenceStore,
    EvidenceStoreError,
    InvalidSignatureError,
    LocalEvidenceStore,
)

router = APIRouter()


def get_local_store(store: Annotated[EvidenceStore, Depends(get_evidence_store)]) -> LocalEvidenceStore:
    if not isinstance(store, LocalEvidenceStore):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="object routes require the local backend")
    return store


LocalStore = Annotated[LocalEvidenceStore, Depends(get_local_store)]


@router.put("/objects/{path:path}", status_code=status.HTTP_201_CREATED)
async def put_object(
    path: str,
    request: Request,
    store: LocalStore,
    expires: Annotated[int, Query()],
    signature: Annotated[str, Query(min_length=1)],
) -> dict[str, str | int]:
    set_audit_context(request, action="evidence.signed_put", detail={"what": {"path": path}})
    try:
        store.verify_signed_write(path, expires, signature)
    except InvalidSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except EvidenceStoreError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    content = await request.body()
    if not content:
        raise HTTPException(status_code=422, detail="uploaded file is empty")
    if len(content) > MAX_EVIDENCE_BYTES:
        raise HTTPException(status_code=413, detail="file too large; maximum size is 10 MiB")
    mime_type = request.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
    if not is_image(mime_type, path):
        raise HTTPException(status_code=422, detail="only image files are allowed")

    try:
        public_url = store.put_object(path, content, mime_type, overwrite=False)
    except EvidenceObjectExistsError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except EvidenceStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"path": path, "public_url": public_url, "size_bytes": len(content)}


@router.get("/objects/{path:path}")
def get_object(path: str, store: LocalStore) -> FileResponse:
    try:
        file_path = store.get_object_file(path)
    except EvidenceObjectNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except EvidenceStoreError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return FileResponse(file_path)
