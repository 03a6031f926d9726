"""
BeanGate Backend: API Key Route Handlers
==========================================

What:  Manage personal provider API keys (/api/keys) and read free-tier usage.
How:   Every endpoint except GET /api/keys/usage needs an authenticated
       caller. Keys are accepted in plaintext and never returned: responses
       carry a masked form only.
"""

import logging

from fastapi import APIRouter, Depends, Response

from beangate.dependencies import (
    get_caller,
    get_credential_store,
    get_orchestrator,
    get_registry,
    require_caller,
)
from beangate.providers.registry import ProviderRegistry
from beangate.routes.analyze import provider_info, usage_response
from beangate.schemas.analysis import ErrorResponse, UsageResponse
from beangate.schemas.credential import (
    CredentialInfo,
    CredentialListResponse,
    CredentialTestResponse,
    PreferredProviderRequest,
    PreferredProviderResponse,
    SaveCredentialRequest,
)
from beangate.services.analysis_service import AnalysisOrchestrator, Caller
from beangate.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/keys", tags=["API Keys"])

_AUTH_RESPONSES = {401: {"description": "Sign-in required", "model": ErrorResponse}}


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="Free-tier usage for today",
    description="Works for anonymous and signed-in callers; counts reset at UTC midnight.",
)
async def get_usage(
    caller: Caller = Depends(get_caller),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> UsageResponse:
    return usage_response(await orchestrator.get_usage(caller))


@router.get(
    "",
    response_model=CredentialListResponse,
    responses=_AUTH_RESPONSES,
    summary="List my stored API keys (masked)",
)
async def list_keys(
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
    registry: ProviderRegistry = Depends(get_registry),
) -> CredentialListResponse:
    summaries = await credentials.list(caller.user_id)
    return CredentialListResponse(
        keys=[CredentialInfo.model_validate(s) for s in summaries],
        preferred_provider=await credentials.get_preferred(caller.user_id),
        providers=[provider_info(d) for d in registry.describe_all()],
    )


@router.patch(
    "/preferred",
    response_model=PreferredProviderResponse,
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Unknown provider or no key stored for it", "model": ErrorResponse},
    },
    summary="Set my default provider",
)
async def set_preferred(
    body: PreferredProviderRequest,
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
) -> PreferredProviderResponse:
    preferred = await credentials.set_preferred(caller.user_id, body.provider)
    return PreferredProviderResponse(preferred_provider=preferred)


@router.put(
    "/{provider}",
    response_model=CredentialInfo,
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Unknown provider or malformed key", "model": ErrorResponse},
    },
    summary="Save an API key for a provider",
)
async def save_key(
    provider: str,
    body: SaveCredentialRequest,
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
) -> CredentialInfo:
    summary = await credentials.save(caller.user_id, provider, body.api_key.get_secret_value())
    return CredentialInfo.model_validate(summary)


@router.delete(
    "/{provider}",
    status_code=204,
    response_class=Response,
    responses=_AUTH_RESPONSES,
    summary="Remove the API key for a provider",
)
async def delete_key(
    provider: str,
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
) -> Response:
    await credentials.delete(caller.user_id, provider)
    return Response(status_code=204)


@router.post(
    "/{provider}/test",
    response_model=CredentialTestResponse,
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "No key stored for this provider", "model": ErrorResponse},
        409: {"description": "Stored key failed verification", "model": ErrorResponse},
    },
    summary="Check a stored API key against the provider",
)
async def test_key(
    provider: str,
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
) -> CredentialTestResponse:
    result = await credentials.test(caller.user_id, provider)
    return CredentialTestResponse(valid=result.valid, message=result.message)
