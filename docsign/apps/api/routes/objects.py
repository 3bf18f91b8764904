from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import Response

from docsign.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from docsign.services.storage import get_object_store, verify_url_signature


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/objects", tags=["objects"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/{ref:path}")
async def download_object(
    ref: str,
    exp: int = Query(...),
    sig: str = Query(...),
) -> Response:
    # Time-limited URLs minted by the object store; the signature is the only credential.
    if not verify_url_signature(ref, exp, sig):
        logger.info("object_url_rejected ref=%s", ref)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "URL_SIGNATURE_INVALID", "message": "download link is invalid or expired"},
        )
    data = await get_object_store().get(ref)
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{ref.rsplit("/", 1)[-1]}"'},
    )
