"""HTTP JSON API exposing the identity lifecycle operations."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from .authority import EasyRsaAuthority
from .ccd import CcdPolicyStore
from .config import Settings, load_settings, resolve_config_path
from .errors import (
    AuthorizationError,
    BackingStoreError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .manager import IdentityManager
from .models import CreateOptions, Identity, Module, Role, Route, RoutingPolicy
from .passwords import PasswordStore, resolve_password_db_path
from .replication import ReplicationState
from .status import StatusFileSource
from .store import IdentityStore

logger = logging.getLogger("vpnadmin.service")


class IdentityView(BaseModel):
    name: str
    account_status: str
    connection_state: str
    connection_count: int
    expiration: Optional[datetime] = None
    revocation: Optional[datetime] = None
    expiring_soon: bool
    actions: List[str] = Field(default_factory=list)


class IdentityListResponse(BaseModel):
    identities: List[IdentityView]


class StatsResponse(BaseModel):
    total_identities: int
    active_connections: int
    revoked_count: int
    expiring_soon_count: int


class ServerInfoResponse(BaseModel):
    role: str
    last_successful_sync: Optional[datetime] = None
    modules: List[str]


class CreateIdentityRequest(BaseModel):
    name: str = Field(..., max_length=128)
    password: Optional[str] = Field(default=None, max_length=256)


class PasswordRequest(BaseModel):
    password: str = Field(..., max_length=256)


class RouteModel(BaseModel):
    address: str
    mask: str
    description: str = Field(default="", max_length=256)


class RoutingPolicyRequest(BaseModel):
    assigned_address: Optional[str] = None
    custom_routes: List[RouteModel] = Field(default_factory=list)


class RoutingPolicyResponse(RoutingPolicyRequest):
    owner: str
    read_only: bool


def _identity_to_view(identity: Identity, actions: frozenset) -> IdentityView:
    return IdentityView(
        name=identity.name,
        account_status=identity.account_status.value,
        connection_state=identity.connection_state.value,
        connection_count=identity.connection_count,
        expiration=identity.expiration,
        revocation=identity.revocation,
        expiring_soon=identity.expiring_soon,
        actions=sorted(action.value for action in actions),
    )


def _policy_to_response(policy: RoutingPolicy, *, read_only: bool) -> RoutingPolicyResponse:
    return RoutingPolicyResponse(
        owner=policy.owner,
        assigned_address=policy.assigned_address,
        custom_routes=[
            RouteModel(address=route.address, mask=route.mask, description=route.description)
            for route in policy.custom_routes
        ],
        read_only=read_only,
    )


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except BackingStoreError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


def build_manager(settings: Settings) -> IdentityManager:
    """Wire the production collaborators described by ``settings``."""

    routing = None
    if Module.PER_CLIENT_ROUTING in settings.modules:
        routing = CcdPolicyStore(settings.ccd_dir or settings.pki_dir.parent / "ccd")

    passwords = None
    if Module.PASSWORD_AUTH in settings.modules:
        db_path = settings.password_db_path or resolve_password_db_path(
            os.getenv("VPNADMIN_PASSWORD_DB_PATH")
        )
        passwords = PasswordStore(db_path)
        passwords.initialize()

    connections = StatusFileSource(settings.status_path) if settings.status_path else None

    authority = EasyRsaAuthority(
        settings.pki_dir,
        easyrsa_binary=settings.easyrsa_binary,
        server_name=settings.server_name,
        remote_host=settings.remote_host,
        remote_port=settings.remote_port,
        protocol=settings.protocol,
        template_dir=settings.template_dir,
        password_auth=Module.PASSWORD_AUTH in settings.modules,
    )

    return IdentityManager(
        IdentityStore(),
        authority,
        replication=ReplicationState(settings.role),
        modules=settings.modules,
        routing=routing,
        passwords=passwords,
        connections=connections,
    )


def register_api_routes(app: FastAPI, manager: IdentityManager) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/server", response_model=ServerInfoResponse)
    def server_info() -> ServerInfoResponse:
        replication = manager.replication
        return ServerInfoResponse(
            role=replication.role.value,
            last_successful_sync=replication.last_successful_sync,
            modules=sorted(module.value for module in manager.modules),
        )

    @app.get("/api/identities", response_model=IdentityListResponse)
    def list_identities(
        search: Optional[str] = Query(default=None, max_length=128),
        hide_revoked: bool = Query(default=False),
    ) -> IdentityListResponse:
        context = manager.operator_context()
        identities = manager.list_identities(search_text=search, hide_revoked=hide_revoked)
        return IdentityListResponse(
            identities=[
                _identity_to_view(identity, manager.permitted_actions(identity, context))
                for identity in identities
            ]
        )

    @app.get("/api/stats", response_model=StatsResponse)
    def dashboard_stats() -> StatsResponse:
        summary = manager.get_dashboard_aggregate()
        return StatsResponse(
            total_identities=summary.total_identities,
            active_connections=summary.active_connections,
            revoked_count=summary.revoked_count,
            expiring_soon_count=summary.expiring_soon_count,
        )

    @app.get("/api/identities/{name}", response_model=IdentityView)
    def get_identity(name: str) -> IdentityView:
        with _http_errors():
            identity = manager.get_identity(name)
        return _identity_to_view(identity, manager.permitted_actions(identity))

    @app.post(
        "/api/identities",
        status_code=status.HTTP_201_CREATED,
        response_model=IdentityView,
    )
    def create_identity(request: CreateIdentityRequest) -> IdentityView:
        with _http_errors():
            identity = manager.create_identity(
                request.name,
                CreateOptions(password=request.password),
            )
        logger.info("Identity %s created via API", identity.name)
        return _identity_to_view(identity, manager.permitted_actions(identity))

    @app.post("/api/identities/{name}/revoke", response_model=IdentityView)
    def revoke_identity(name: str) -> IdentityView:
        with _http_errors():
            identity = manager.revoke_identity(name)
        return _identity_to_view(identity, manager.permitted_actions(identity))

    @app.post("/api/identities/{name}/unrevoke", response_model=IdentityView)
    def unrevoke_identity(name: str) -> IdentityView:
        with _http_errors():
            identity = manager.unrevoke_identity(name)
        return _identity_to_view(identity, manager.permitted_actions(identity))

    @app.post("/api/identities/{name}/rotate", response_model=IdentityView)
    def rotate_identity(name: str) -> IdentityView:
        with _http_errors():
            identity = manager.rotate_identity(name)
        return _identity_to_view(identity, manager.permitted_actions(identity))

    @app.delete("/api/identities/{name}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_identity(name: str) -> None:
        with _http_errors():
            manager.delete_identity(name)

    @app.post("/api/identities/{name}/password", status_code=status.HTTP_204_NO_CONTENT)
    def set_password(name: str, request: PasswordRequest) -> None:
        with _http_errors():
            manager.set_password(name, request.password)

    @app.get("/api/identities/{name}/routes", response_model=RoutingPolicyResponse)
    def get_routes(name: str) -> RoutingPolicyResponse:
        with _http_errors():
            policy = manager.get_routing_policy(name)
        return _policy_to_response(policy, read_only=manager.replication.role is Role.REPLICA)

    @app.put("/api/identities/{name}/routes", response_model=RoutingPolicyResponse)
    def save_routes(name: str, request: RoutingPolicyRequest) -> RoutingPolicyResponse:
        policy = RoutingPolicy(
            owner=name,
            assigned_address=request.assigned_address,
            custom_routes=[
                Route(address=route.address, mask=route.mask, description=route.description)
                for route in request.custom_routes
            ],
        )
        with _http_errors():
            saved = manager.save_routing_policy(policy)
        return _policy_to_response(saved, read_only=False)

    @app.get("/api/identities/{name}/config", response_class=PlainTextResponse)
    def download_config(name: str) -> PlainTextResponse:
        with _http_errors():
            content = manager.download_config(name)
        return PlainTextResponse(
            content,
            headers={"Content-Disposition": f'attachment; filename="{name}.ovpn"'},
        )


def create_app(
    *,
    manager: IdentityManager | None = None,
    settings: Settings | None = None,
    refresh_on_startup: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application for the identity administration API."""

    if manager is None:
        if settings is None:
            settings = load_settings(resolve_config_path(os.getenv("VPNADMIN_CONFIG")))
        manager = build_manager(settings)

    if refresh_on_startup:
        try:
            manager.refresh()
        except BackingStoreError:
            logger.exception("Initial identity load failed; starting with an empty roster")

    app = FastAPI(
        title="VPN Identity Administration API",
        version="0.1.0",
        description="Lifecycle and authorization for certificate-backed VPN identities.",
    )
    app.state.manager = manager

    if manager.replication.role is Role.REPLICA:
        logger.info("Running as a read-only replica; identity mutations are disabled")

    register_api_routes(app, manager)
    return app


__all__ = ["build_manager", "create_app", "register_api_routes"]
