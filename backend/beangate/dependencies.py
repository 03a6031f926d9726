"""
BeanGate Backend: Route Dependencies
======================================

What:  FastAPI dependencies that hand route handlers the caller identity and
       the gateway components built in the lifespan.
How:   Components live on `app.state` (set by main.lifespan) so tests can
       build an app around their own instances. The caller's user id comes
       from the trusted header the upstream auth layer sets
       (AUTH_USER_HEADER); the network address from the connection, or from
       the first X-Forwarded-For hop when TRUST_FORWARDED_FOR is enabled.
"""

from typing import Optional

from fastapi import Depends, Request

from beangate.config import settings
from beangate.exceptions import AuthenticationRequiredError, ValidationError
from beangate.providers.registry import ProviderRegistry
from beangate.services.analysis_service import AnalysisOrchestrator, Caller
from beangate.services.credential_store import CredentialStore
from beangate.services.image_store import FileImageStore
from beangate.services.quota_ledger import MAX_USER_ID_LENGTH


def _client_address(request: Request) -> Optional[str]:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def get_caller(request: Request) -> Caller:
    user_id = (request.headers.get(settings.auth_user_header) or "").strip() or None
    if user_id is not None and len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError(
            message=f"User id must be at most {MAX_USER_ID_LENGTH} characters",
            field=settings.auth_user_header,
        )
    return Caller(user_id=user_id, address=_client_address(request))


def require_caller(caller: Caller = Depends(get_caller)) -> Caller:
    """Same as get_caller, but anonymous callers get 401."""
    if not caller.authenticated:
        raise AuthenticationRequiredError()
    return caller


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.orchestrator


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_image_store(request: Request) -> FileImageStore:
    return request.app.state.image_store
