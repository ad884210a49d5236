"""HTTP guards for FastAPI routes.

``require_roles("admin|editor")`` and ``require_permissions("posts.edit")``
build dependencies that let the request through when the principal holds any
of the listed names. Denials are rendered according to
``settings.middleware``: a JSON body, a redirect, or an ``HTTPException``.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, NoReturn

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ..config import ResponseSettings, Settings
from ..dependencies import get_app_settings, get_current_principal, get_resolver
from ..domain.ports.principal import Principal
from ..errors import AppError, error_payload
from ..services.resolver import PermissionResolver

logger = logging.getLogger(__name__)


class AccessDenied(Exception):
    """Carries a ready response out of a dependency."""

    def __init__(self, response: Response, reason: str):
        self.response = response
        self.reason = reason
        super().__init__(reason)


def split_names(names: Iterable[str] | str) -> list[str]:
    """Flatten ``"a|b"`` style arguments into a list of names."""
    if isinstance(names, str):
        names = [names]
    result: list[str] = []
    for name in names:
        result.extend(part.strip() for part in name.split("|") if part.strip())
    return result


def _deny_unauthenticated(config: ResponseSettings, redirect_to: str | None = None) -> NoReturn:
    if config.type == "redirect":
        raise AccessDenied(
            RedirectResponse(redirect_to or config.redirect_to, status_code=status.HTTP_302_FOUND),
            "unauthenticated",
        )
    if config.type == "abort":
        raise HTTPException(status_code=config.abort_code, detail=config.json_message)
    raise AccessDenied(
        JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"message": config.json_message, "success": False},
        ),
        "unauthenticated",
    )


def _deny_unauthorized(config: ResponseSettings, message: str) -> NoReturn:
    if config.type == "redirect":
        raise AccessDenied(
            RedirectResponse(config.redirect_to, status_code=status.HTTP_302_FOUND),
            message,
        )
    if config.type == "abort":
        raise HTTPException(status_code=config.abort_code, detail=message)
    raise AccessDenied(
        JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"message": config.json_message or message, "success": False},
        ),
        message,
    )


def require_authenticated(redirect_to: str | None = None) -> Callable:
    """
    Reject requests that carry no principal.

    Args:
        redirect_to: Overrides the configured redirect target

    Returns:
        Dependency returning the authenticated principal
    """
    async def dependency(
        principal: Principal | None = Depends(get_current_principal),
        settings: Settings = Depends(get_app_settings),
    ) -> Principal:
        if principal is None:
            _deny_unauthenticated(settings.middleware.unauthenticated_response, redirect_to)
        return principal

    return dependency


def require_roles(*roles: str) -> Callable:
    """
    Allow the request when the principal holds any of the roles.

    Args:
        *roles: Role slugs; each may hold several separated by ``|``

    Returns:
        Dependency returning the authorized principal
    """
    names = split_names(roles)

    async def dependency(
        request: Request,
        principal: Principal | None = Depends(get_current_principal),
        resolver: PermissionResolver = Depends(get_resolver),
        settings: Settings = Depends(get_app_settings),
    ) -> Principal:
        if principal is None:
            _deny_unauthenticated(settings.middleware.unauthenticated_response)
        if not names:
            _deny_unauthorized(
                settings.middleware.unauthorized_response, "Invalid role configuration."
            )
        if await resolver.has_any_role(principal, names):
            return principal
        logger.info(
            "Role check denied path=%s principal=%s required=%s",
            request.url.path,
            principal.principal_id,
            "|".join(names),
        )
        _deny_unauthorized(
            settings.middleware.unauthorized_response,
            "User does not have the required role.",
        )

    return dependency


def require_permissions(*permissions: str) -> Callable:
    """
    Allow the request when the principal holds any of the permissions.

    Args:
        *permissions: Permission slugs; each may hold several separated by ``|``

    Returns:
        Dependency returning the authorized principal
    """
    names = split_names(permissions)

    async def dependency(
        request: Request,
        principal: Principal | None = Depends(get_current_principal),
        resolver: PermissionResolver = Depends(get_resolver),
        settings: Settings = Depends(get_app_settings),
    ) -> Principal:
        if principal is None:
            _deny_unauthenticated(settings.middleware.unauthenticated_response)
        if not names:
            _deny_unauthorized(
                settings.middleware.unauthorized_response,
                "Invalid permission configuration.",
            )
        if await resolver.has_any_permission(principal, names):
            return principal
        logger.info(
            "Permission check denied path=%s principal=%s required=%s",
            request.url.path,
            principal.principal_id,
            "|".join(names),
        )
        _deny_unauthorized(
            settings.middleware.unauthorized_response,
            "User does not have the required permission.",
        )

    return dependency


def _log_error(request: Request, status_code: int, code: str, message: str, exc: Exception | None = None) -> None:
    request_id = request.headers.get("x-request-id")
    log_message = f"[{code}] path={request.url.path} request_id={request_id or 'n/a'} message={message}"
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(log_message, exc_info=exc)
    else:
        logger.warning(log_message, exc_info=exc)


def install_error_handlers(app: FastAPI) -> None:
    """Register the handlers that render guard denials and ``AppError``s."""

    @app.exception_handler(AccessDenied)
    async def handle_access_denied(request: Request, exc: AccessDenied) -> Response:
        return exc.response

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        _log_error(request, exc.status_code, exc.code, exc.message, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc.code, exc.message, exc.details),
        )
