# coding: utf-8
"""
Admin Certificate Endpoints

Batch mint to the system wallet, issued certificate listing and revocation.
All endpoints require X-Admin-Key.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.api_key_auth import verify_admin_key
from src.api.certificates import instance_to_dict, ledger_to_dict
from src.database import crud
from src.database.engine import get_session
from src.services.certificates.container import CertificateServices, get_certificate_services

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(verify_admin_key)])


class MintBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    certificate_ids: List[int] = Field(alias="certificateIds", min_length=1)


@router.post("/mint-batch")
async def mint_batch(
    request: MintBatchRequest,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> JSONResponse:
    """
    Mint certificates to the system custody wallet

    Status: 200 all succeeded, 207 partial success, 400 all failed
    """
    report = await services.chain_sync.backfill_batch(session, request.certificate_ids)

    if not report.results:
        status_code = 400
    elif report.errors:
        status_code = 207
    else:
        status_code = 200

    content = {
        "success": bool(report.results),
        "results": report.results,
        "errors": report.errors,
    }
    if not report.results:
        content["error"] = "All certificates failed to mint"

    return JSONResponse(status_code=status_code, content=content)


@router.get("/issued-certificates")
async def list_issued_certificates(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    rows = await crud.list_issued_certificates(session, limit=limit, offset=offset)
    return [
        {
            "grant_id": row["grant"].id,
            "user_id": row["user"].id,
            "username": row["user"].username,
            "rule_id": row["grant"].rule_id,
            "chain_status": row["grant"].chain_status,
            "received_at": row["grant"].created_at.isoformat(),
            "certificate": instance_to_dict(row["instance"]),
            "blockchain": ledger_to_dict(row["ledger"]),
        }
        for row in rows
    ]


@router.delete("/user-certificates/{grant_id}")
async def revoke_certificate(
    grant_id: int,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Revoke an issued certificate (grant, instance and ledger record)"""
    await services.issuer.revoke(session, grant_id)
    return {"success": True}
