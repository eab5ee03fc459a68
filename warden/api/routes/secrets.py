"""POST /secrets/encrypt, POST /secrets/decrypt

Key derivation is CPU-bound, so both operations run in a worker thread.
Every decrypt attempt is audited as PASSWORD_DECRYPTED; failed attempts are
recorded with result FAILURE before the error is returned.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter

from warden.api.dependencies import (
    AuditDep,
    CipherDep,
    ContextDep,
    SecretReaderDep,
    SecretWriterDep,
)
from warden.api.schemas import DecryptRequest, DecryptResponse, EncryptRequest, EncryptResponse
from warden.exceptions import CipherError
from warden.security.audit import event_for
from warden.security.models import AuditAction, EventCategory, EventResult, ResourceType

router = APIRouter(prefix="/secrets", tags=["secrets"])


@router.post("/encrypt", response_model=EncryptResponse, summary="Encrypt a secret")
async def encrypt(
    body: EncryptRequest,
    principal: SecretWriterDep,
    cipher: CipherDep,
    audit: AuditDep,
    ctx: ContextDep,
) -> EncryptResponse:
    ciphertext = await asyncio.to_thread(cipher.encrypt, body.plaintext)
    await audit.append(
        event_for(
            AuditAction.PASSWORD_CREATED,
            ctx,
            principal,
            resource_type=ResourceType.PASSWORD,
            resource_id=body.resource_id,
            category=EventCategory.SECURITY,
            description="Secret encrypted",
        )
    )
    return EncryptResponse(ciphertext=ciphertext)


@router.post("/decrypt", response_model=DecryptResponse, summary="Decrypt a stored secret")
async def decrypt(
    body: DecryptRequest,
    principal: SecretReaderDep,
    cipher: CipherDep,
    audit: AuditDep,
    ctx: ContextDep,
) -> DecryptResponse:
    try:
        plaintext = await asyncio.to_thread(cipher.decrypt, body.ciphertext)
    except CipherError as exc:
        await audit.append(
            event_for(
                AuditAction.PASSWORD_DECRYPTED,
                ctx,
                principal,
                resource_type=ResourceType.PASSWORD,
                resource_id=body.resource_id,
                category=EventCategory.SECURITY,
                result=EventResult.FAILURE,
                description="Secret decryption failed",
                details={"error": type(exc).__name__},
            )
        )
        raise

    await audit.append(
        event_for(
            AuditAction.PASSWORD_DECRYPTED,
            ctx,
            principal,
            resource_type=ResourceType.PASSWORD,
            resource_id=body.resource_id,
            category=EventCategory.SECURITY,
            description="Secret decrypted",
        )
    )
    return DecryptResponse(plaintext=plaintext)
