"""
FastAPI Dependencies - service lookup and bearer authentication.

NO DICTIONARIES - All dependencies return typed objects.

Long-lived services are built once in the application lifespan and kept on
app.state; these accessors let tests swap them through dependency_overrides.
"""

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from gateway.exceptions import AuthenticationError
from gateway.models.domain import AccountData
from gateway.services.admission import AdmissionController
from gateway.services.counter_store import CounterStore
from gateway.services.ledger import UsageLedger
from gateway.services.relay import StreamingRelay
from gateway.services.upstream import UpstreamModelClient

# Bearer token scheme; missing tokens are reported as UNAUTHORIZED by the routes
bearer_scheme = HTTPBearer(auto_error=False)


def get_request_id(request: Request) -> str:
    """Request id assigned by the request logging middleware."""
    return getattr(request.state, "request_id", None) or "unknown"


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    return credentials.credentials if credentials else ""


def get_admission_controller(request: Request) -> AdmissionController:
    return request.app.state.admission  # type: ignore[no-any-return]


def get_relay(request: Request) -> StreamingRelay:
    return request.app.state.relay  # type: ignore[no-any-return]


def get_ledger(request: Request) -> UsageLedger:
    return request.app.state.ledger  # type: ignore[no-any-return]


def get_upstream_client(request: Request) -> UpstreamModelClient:
    return request.app.state.upstream  # type: ignore[no-any-return]


def get_counter_store(request: Request) -> CounterStore:
    return request.app.state.counter_store  # type: ignore[no-any-return]


async def get_current_account(
    token: str = Depends(bearer_token),
    admission: AdmissionController = Depends(get_admission_controller),
) -> AccountData:
    """
    Resolve the caller's account from a bearer token.

    Raises:
        AuthenticationError: rendered as 401 by the app's handler
    """
    if not token:
        raise AuthenticationError("missing bearer token")
    return await admission.authenticate(token)
