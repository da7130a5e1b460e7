"""FastAPI dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Header, Request

from settlement_engine.errors import AuthorizationError, ValidationError
from settlement_engine.services.settlement import Actor, SettlementEngine
from settlement_engine.services.webhook_reconciler import WebhookReconciler
from settlement_engine.wiring import SettlementServices

ROLES = ("user", "admin")


def get_services(request: Request) -> SettlementServices:
    """Service graph built at application startup."""
    return request.app.state.services


def get_engine(services: Annotated[SettlementServices, Depends(get_services)]) -> SettlementEngine:
    return services.engine


def get_reconciler(
    services: Annotated[SettlementServices, Depends(get_services)],
) -> WebhookReconciler:
    return services.reconciler


def get_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Caller identity from the upstream auth layer."""
    if not x_user_id:
        raise AuthorizationError("X-User-ID header is required", code="NOT_AUTHENTICATED")
    role = (x_user_role or "user").lower()
    if role not in ROLES:
        raise ValidationError(f"Invalid X-User-Role: {x_user_role}")
    return Actor(user_id=x_user_id, role=role)


# Type aliases for cleaner dependency injection
Services = Annotated[SettlementServices, Depends(get_services)]
Engine = Annotated[SettlementEngine, Depends(get_engine)]
Reconciler = Annotated[WebhookReconciler, Depends(get_reconciler)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
