"""Tenant header injection for httpx based test clients (including FastAPI's TestClient)."""

import httpx

from dotmac.tenant_testing.context import TenantContextSwitcher


def _apply(switcher: TenantContextSwitcher, request: httpx.Request) -> None:
    for name, value in switcher.headers().items():
        request.headers[name] = value


def attach_tenant_header(
    client: httpx.Client | httpx.AsyncClient, switcher: TenantContextSwitcher
) -> httpx.Client | httpx.AsyncClient:
    """Add the active tenant's header to every request ``client`` sends.

    Requests sent while no tenant is active are left untouched.
    """
    if isinstance(client, httpx.AsyncClient):

        async def inject(request: httpx.Request) -> None:
            _apply(switcher, request)

    else:

        def inject(request: httpx.Request) -> None:
            _apply(switcher, request)

    hooks = client.event_hooks
    hooks["request"] = [*hooks.get("request", []), inject]
    client.event_hooks = hooks
    return client
