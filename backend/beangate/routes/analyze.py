"""
BeanGate Backend: Analyze Route Handlers
==========================================

What:  POST /api/analyze, the provider catalog, and the saved-analysis
       endpoints (history, detail, link to a catalog coffee).
How:   Thin handlers: resolve the caller, delegate to AnalysisOrchestrator,
       shape the response. Errors propagate to the global handlers.

"No coffee bag found" is a normal outcome, not an error: the handler turns
NotIdentifiedError into a 200 response with `identified: false` and a
message telling the user to try a clearer photo.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Query

from beangate.dependencies import (
    get_caller,
    get_credential_store,
    get_orchestrator,
    get_registry,
    require_caller,
)
from beangate.exceptions import NotIdentifiedError
from beangate.providers.identity import ProviderDescriptor
from beangate.providers.registry import ProviderRegistry
from beangate.schemas.analysis import (
    AnalysisHistoryResponse,
    AnalysisRecordResponse,
    AnalyzeRequest,
    AnalyzeResponse,
    ErrorResponse,
    LinkCoffeeRequest,
    ProviderInfo,
    UsageResponse,
)
from beangate.schemas.credential import CredentialInfo, ProviderCatalogResponse
from beangate.services.analysis_service import AnalysisOrchestrator, Caller
from beangate.services.credential_store import CredentialStore
from beangate.services.quota_ledger import UsageInfo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analyze", tags=["Analyze"])


def provider_info(descriptor: ProviderDescriptor) -> ProviderInfo:
    return ProviderInfo(
        name=descriptor.identity,
        display_name=descriptor.display_name,
        model=descriptor.model,
        requires_key=descriptor.requires_user_credential,
    )


def usage_response(usage: UsageInfo) -> UsageResponse:
    return UsageResponse(
        used=usage.used,
        limit=usage.limit,
        remaining=usage.remaining,
        resets_at=usage.resets_at,
    )


@router.post(
    "",
    response_model=AnalyzeResponse,
    responses={
        400: {"description": "Unknown provider, missing/invalid API key or bad input", "model": ErrorResponse},
        404: {"description": "Image reference not found", "model": ErrorResponse},
        409: {"description": "Stored API key failed verification", "model": ErrorResponse},
        429: {"description": "Daily free limit reached or provider rate limit", "model": ErrorResponse},
        502: {"description": "Provider answered with unreadable output", "model": ErrorResponse},
        503: {"description": "Provider unavailable or timed out", "model": ErrorResponse},
    },
    summary="Analyze a coffee bag photo",
    description=(
        "Runs a previously uploaded image (see POST /api/images) through the selected "
        "provider. Without a provider the caller's preferred provider is used, and "
        "anonymous callers get the free House Blend tier."
    ),
)
async def analyze(
    body: AnalyzeRequest,
    caller: Caller = Depends(get_caller),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    registry: ProviderRegistry = Depends(get_registry),
) -> AnalyzeResponse:
    logger.info(
        "Analyze request: image=%s provider=%s authenticated=%s",
        body.image_ref,
        body.provider or "<default>",
        caller.authenticated,
    )
    try:
        outcome = await orchestrator.analyze(body.image_ref, body.provider, caller)
    except NotIdentifiedError as e:
        return AnalyzeResponse(
            analysis=e.result,
            image_ref=body.image_ref,
            provider=e.provider,
            provider_display_name=registry.resolve(e.provider).display_name,
            message=e.message,
            metering_degraded=e.metering_degraded,
        )

    return AnalyzeResponse(
        analysis=outcome.result,
        saved_id=outcome.saved_id,
        image_ref=body.image_ref,
        provider=outcome.provider,
        provider_display_name=outcome.provider_display_name,
        metering_degraded=outcome.metering_degraded,
    )


@router.get(
    "/providers",
    response_model=ProviderCatalogResponse,
    summary="List analysis providers",
    description=(
        "Provider catalog with today's free-tier usage. Authenticated callers also "
        "get their stored key summary and preferred provider."
    ),
)
async def list_providers(
    caller: Caller = Depends(get_caller),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    registry: ProviderRegistry = Depends(get_registry),
    credentials: CredentialStore = Depends(get_credential_store),
) -> ProviderCatalogResponse:
    catalog = ProviderCatalogResponse(
        providers=[provider_info(d) for d in registry.describe_all()],
        usage=usage_response(await orchestrator.get_usage(caller)),
    )
    if caller.authenticated:
        summaries = await credentials.list(caller.user_id)
        catalog.keys = [CredentialInfo.model_validate(s) for s in summaries]
        catalog.preferred_provider = await credentials.get_preferred(caller.user_id)
    return catalog


@router.get(
    "",
    response_model=AnalysisHistoryResponse,
    responses={401: {"description": "Sign-in required", "model": ErrorResponse}},
    summary="List my saved analyses",
)
async def list_analyses(
    limit: int = Query(default=20, ge=1, le=100, description="Most recent first"),
    caller: Caller = Depends(require_caller),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> AnalysisHistoryResponse:
    records = await orchestrator.history(caller.user_id, limit=limit)
    return AnalysisHistoryResponse(
        analyses=[AnalysisRecordResponse.model_validate(r) for r in records],
    )


@router.get(
    "/{analysis_id}",
    response_model=AnalysisRecordResponse,
    responses={
        401: {"description": "Sign-in required", "model": ErrorResponse},
        404: {"description": "Analysis not found", "model": ErrorResponse},
    },
    summary="Get one saved analysis",
)
async def get_analysis(
    analysis_id: uuid.UUID,
    caller: Caller = Depends(require_caller),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> AnalysisRecordResponse:
    record = await orchestrator.get_record(caller.user_id, analysis_id)
    return AnalysisRecordResponse.model_validate(record)


@router.patch(
    "/{analysis_id}/coffee",
    response_model=AnalysisRecordResponse,
    responses={
        401: {"description": "Sign-in required", "model": ErrorResponse},
        404: {"description": "Analysis not found", "model": ErrorResponse},
    },
    summary="Link a saved analysis to a catalog coffee",
)
async def link_coffee(
    analysis_id: uuid.UUID,
    body: LinkCoffeeRequest,
    caller: Caller = Depends(require_caller),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> AnalysisRecordResponse:
    record = await orchestrator.link_coffee(caller.user_id, analysis_id, body.coffee_id)
    return AnalysisRecordResponse.model_validate(record)
