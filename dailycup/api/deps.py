from fastapi import Depends, Request

from ..auth import Principal, optional_principal
from ..config import Settings, get_settings
from ..cod import CODLifecycle
from ..dispatch import CourierDispatcher
from ..geocode import GeocodeQueue
from ..orders import OrderStateMachine
from ..rate_limit import RateLimiter, get_rate_store
from ..webhooks import PaymentWebhookReconciler


def get_state_machine(settings: Settings = Depends(get_settings)) -> OrderStateMachine:
    return OrderStateMachine(settings)


def get_dispatcher(settings: Settings = Depends(get_settings)) -> CourierDispatcher:
    return CourierDispatcher(settings)


def get_reconciler(
    settings: Settings = Depends(get_settings),
    machine: OrderStateMachine = Depends(get_state_machine),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
) -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(settings, machine, dispatcher)


def get_cod_lifecycle(machine: OrderStateMachine = Depends(get_state_machine)) -> CODLifecycle:
    return CODLifecycle(machine)


def get_geocode_queue(settings: Settings = Depends(get_settings)) -> GeocodeQueue:
    return GeocodeQueue(settings)


def get_rate_limiter(settings: Settings = Depends(get_settings)) -> RateLimiter:
    return RateLimiter(get_rate_store(settings), settings)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limited(bucket: str):
    """Dependency charging one hit to ``bucket`` for the caller (principal, else client IP)."""
    def dep(
        request: Request,
        principal: Principal | None = Depends(optional_principal),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        identity = principal.actor if principal else client_ip(request)
        limiter.hit(bucket, identity)
    return dep
