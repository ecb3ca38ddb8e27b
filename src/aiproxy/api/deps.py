"""Centralized FastAPI dependency type aliases.

Import these ``*Dep`` aliases in route modules instead of manually
writing ``Annotated[T, Depends(get_xxx)]`` everywhere.  Each alias
corresponds to a single ``get_*`` factory and can be overridden in
tests via ``app.dependency_overrides[get_xxx] = ...``.
"""

from typing import Annotated

from fastapi import Depends

from aiproxy.core.gateway import ProxyGateway, get_gateway
from aiproxy.infra.concurrency import (
    ConcurrencyGate,
    get_client_id,
    get_concurrency_gate,
)

ClientIdDep = Annotated[str, Depends(get_client_id)]
ConcurrencyGateDep = Annotated[ConcurrencyGate, Depends(get_concurrency_gate)]
GatewayDep = Annotated[ProxyGateway, Depends(get_gateway)]
