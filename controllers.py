"""
HTTP glue shared by every resource: query parsing, the success envelope and
a generic CRUD controller that routes bind to.
"""
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from auth import get_current_user
from errors import NotFoundError, ValidationError
from services import BaseService

OPTION_KEYS = ("page", "limit", "sort", "select", "populate")


def _positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = 0
    if value < 1:
        raise ValidationError(
            f"'{name}' must be a positive integer",
            errors=[{"field": name, "message": "must be a positive integer", "value": raw}],
        )
    return value


def _coerce(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    return value


def parse_query(params: Mapping[str, str]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split query parameters into ``(criteria, options)``.

    Paging keys never reach the filter and operator keys (``$...``) are
    dropped.
    """
    criteria: Dict[str, Any] = {}
    options: Dict[str, Any] = {}
    for key, value in params.items():
        if key in OPTION_KEYS:
            if value != "":
                options[key] = _positive_int(key, value) if key in ("page", "limit") else value
        elif not key.startswith("$"):
            criteria[key] = _coerce(value)
    return criteria, options


def use(name: str):
    """Dependency returning the service registered under ``name`` at startup."""

    def dependency(request: Request):
        found = (getattr(request.app.state, "services", None) or {}).get(name)
        if found is None:
            raise RuntimeError("Database not configured")
        return found

    return Depends(dependency)


def page_options(request: Request) -> Dict[str, Any]:
    return parse_query(request.query_params)[1]


def success(data: Any = None, message: str = "Success", status_code: int = 200, pagination: Optional[Dict[str, Any]] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": True, "message": message, "data": data}
    if pagination is not None:
        content["pagination"] = pagination
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def paged(page: Dict[str, Any], message: str) -> JSONResponse:
    return success(page["documents"], message, pagination=page["pagination"])


def body(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_unset=True)


class ResourceController:
    """Generic create/get/list/update/delete handlers over one service."""

    def __init__(self, service: BaseService, entity: str):
        self.service = service
        self.entity = entity

    def handle_create(self, data: Dict[str, Any], user: Optional[dict] = None) -> JSONResponse:
        document = self.service.create(data, context=user)
        return success(document, f"{self.entity} created successfully", status_code=201)

    def handle_get_by_id(self, id: str, request: Request, user: Optional[dict] = None) -> JSONResponse:
        document = self.service.find_by_id(id, page_options(request), context=user)
        if document is None:
            raise NotFoundError(f"{self.entity} not found")
        return success(document, f"{self.entity} retrieved successfully")

    def handle_get_all(self, request: Request, user: Optional[dict] = None, **fixed: Any) -> JSONResponse:
        criteria, options = parse_query(request.query_params)
        criteria.update(fixed)
        page = self.service.find_many(criteria, options, context=user)
        return paged(page, f"{self.entity} list retrieved successfully")

    def handle_update(self, id: str, patch: Dict[str, Any], user: Optional[dict] = None) -> JSONResponse:
        document = self.service.update(id, patch, context=user)
        if document is None:
            raise NotFoundError(f"{self.entity} not found")
        return success(document, f"{self.entity} updated successfully")

    def handle_delete(self, id: str, user: Optional[dict] = None) -> JSONResponse:
        document = self.service.delete(id, context=user)
        if document is None:
            raise NotFoundError(f"{self.entity} not found")
        return success(document, f"{self.entity} deleted successfully")


def crud_router(
    prefix: str,
    service_name: str,
    entity: str,
    create_model: Type[BaseModel],
    update_model: Type[BaseModel],
    public_reads: bool = True,
) -> APIRouter:
    """Bind POST/GET/GET{id}/PUT{id}/DELETE{id} under ``prefix``."""
    router = APIRouter(prefix=prefix)
    read_deps = [] if public_reads else [Depends(get_current_user)]
    service = use(service_name)

    @router.post("", status_code=201)
    def create(payload: create_model, user=Depends(get_current_user), svc=service):
        return ResourceController(svc, entity).handle_create(body(payload), user)

    @router.get("", dependencies=read_deps)
    def get_all(request: Request, svc=service):
        return ResourceController(svc, entity).handle_get_all(request)

    @router.get("/{id}", dependencies=read_deps)
    def get_by_id(id: str, request: Request, svc=service):
        return ResourceController(svc, entity).handle_get_by_id(id, request)

    @router.put("/{id}")
    def update(id: str, payload: update_model, user=Depends(get_current_user), svc=service):
        return ResourceController(svc, entity).handle_update(id, body(payload), user)

    @router.delete("/{id}")
    def delete(id: str, user=Depends(get_current_user), svc=service):
        return ResourceController(svc, entity).handle_delete(id, user)

    return router
