"""Form-encoded action endpoint used by the browser/client SDK and the admin tools.

Every action is registered in ACTIONS with the nonce it expects and whether an
admin bearer token is required. The table is checked once at startup by
validate_action_table().
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.datastructures import FormData

from loggr.api.v1.auth import admin_claims_from_header
from loggr.api.v1.dependencies.context import get_ingestion_service, get_request_context
from loggr.core.exceptions import (IgnoredByPolicy, LoggrError, RateLimited, SecurityError,
                                   StorageError, ValidationError)
from loggr.core.request_context import RequestContext
from loggr.core.security import ADMIN_NONCE_ACTION, LOG_ERROR_NONCE_ACTION, verify_nonce
from loggr.core.services.ignore_matcher import validate_pattern_definition
from loggr.core.services.ingestion_service import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1",
    tags=["Ingestion"],
)

MAX_BATCH_RECORDS = 10


class AjaxResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    ignored: Optional[bool] = None
    data: Optional[Dict[str, Any]] = None


def ajax_json(response: AjaxResponse, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=response.model_dump(exclude_none=True))


ActionHandler = Callable[[FormData, IngestionService, RequestContext], Awaitable[AjaxResponse]]


@dataclass(frozen=True)
class Action:
    handler: ActionHandler
    nonce_action: str
    admin_only: bool


async def _ingest_one(raw: Optional[str], service: IngestionService, context: RequestContext) -> AjaxResponse:
    try:
        stored = await service.log_error(raw, context)
        return AjaxResponse(message="Error logged successfully", data={"error_id": stored.id})
    except IgnoredByPolicy as e:
        return AjaxResponse(message=e.message, ignored=True)
    except RateLimited:
        return AjaxResponse()
    except ValidationError as e:
        logger.debug(f"Rejected error report: {e.message}")
        return AjaxResponse(success=False, message=e.message)
    except StorageError as e:
        return AjaxResponse(success=False, message=e.message)


async def handle_log_error(form: FormData, service: IngestionService, context: RequestContext) -> AjaxResponse:
    payloads: List[str] = [p for p in form.getlist("error_data") if isinstance(p, str)]
    if len(payloads) <= 1:
        return await _ingest_one(payloads[0] if payloads else None, service, context)

    # Unload flush: several records in one POST, each goes through the full pipeline
    accepted = 0
    for raw in payloads[-MAX_BATCH_RECORDS:]:
        result = await _ingest_one(raw, service, context)
        if result.success:
            accepted += 1
    return AjaxResponse(success=accepted > 0, data={"received": len(payloads), "accepted": accepted})


def _pattern_id(form: FormData) -> int:
    try:
        return int(form.get("pattern_id"))
    except (TypeError, ValueError):
        raise ValidationError("Invalid pattern ID")


async def handle_add_ignore_pattern(form: FormData, service: IngestionService,
                                    context: RequestContext) -> AjaxResponse:
    pattern_type = str(form.get("pattern_type") or "").strip()
    pattern_value = str(form.get("pattern_value") or "")
    notes = form.get("notes")
    validate_pattern_definition(pattern_type, pattern_value)
    pattern = await service.ignore_patterns.add_ignore_pattern(pattern_type, pattern_value,
                                                               notes=str(notes) if notes else None)
    return AjaxResponse(message="Ignore pattern added successfully", data={"pattern_id": pattern.id})


async def handle_toggle_ignore_pattern(form: FormData, service: IngestionService,
                                       context: RequestContext) -> AjaxResponse:
    pattern = await service.ignore_patterns.toggle_ignore_pattern(_pattern_id(form))
    if pattern is None:
        raise ValidationError("Ignore pattern not found")
    return AjaxResponse(message="Ignore pattern updated", data={"is_active": pattern.is_active})


async def handle_delete_ignore_pattern(form: FormData, service: IngestionService,
                                       context: RequestContext) -> AjaxResponse:
    if not await service.ignore_patterns.delete_ignore_pattern(_pattern_id(form)):
        raise ValidationError("Ignore pattern not found")
    return AjaxResponse(message="Ignore pattern deleted")


async def handle_clear_logs(form: FormData, service: IngestionService, context: RequestContext) -> AjaxResponse:
    deleted = await service.errors.clear_all_logs()
    await service.errors.invalidate_stats_cache()
    logger.info(f"All error logs cleared ({deleted} rows)")
    return AjaxResponse(message="All error logs have been cleared.", data={"deleted": deleted})


ACTIONS: Dict[str, Action] = {
    "log_error": Action(handle_log_error, LOG_ERROR_NONCE_ACTION, admin_only=False),
    "add_ignore_pattern": Action(handle_add_ignore_pattern, ADMIN_NONCE_ACTION, admin_only=True),
    "toggle_ignore_pattern": Action(handle_toggle_ignore_pattern, ADMIN_NONCE_ACTION, admin_only=True),
    "delete_ignore_pattern": Action(handle_delete_ignore_pattern, ADMIN_NONCE_ACTION, admin_only=True),
    "clear_logs": Action(handle_clear_logs, ADMIN_NONCE_ACTION, admin_only=True),
}

REQUIRED_ACTIONS = ("log_error", "add_ignore_pattern", "toggle_ignore_pattern",
                    "delete_ignore_pattern", "clear_logs")


def validate_action_table(actions: Dict[str, Action] = ACTIONS) -> None:
    """Fail fast at startup if an action is missing or wired wrong."""
    missing = [name for name in REQUIRED_ACTIONS if name not in actions]
    if missing:
        raise RuntimeError(f"Ajax action table is missing handlers: {', '.join(missing)}")
    for name, action in actions.items():
        if not callable(action.handler):
            raise RuntimeError(f"Ajax action '{name}' has no callable handler")
        if action.nonce_action not in (LOG_ERROR_NONCE_ACTION, ADMIN_NONCE_ACTION):
            raise RuntimeError(f"Ajax action '{name}' uses an unknown nonce action")
        if action.admin_only and action.nonce_action != ADMIN_NONCE_ACTION:
            raise RuntimeError(f"Admin ajax action '{name}' must use the admin nonce")
    logger.debug(f"Ajax action table validated: {', '.join(sorted(actions))}")


@router.post("/ajax", summary="Ajax action endpoint",
             description="Form fields: action, nonce and action specific fields such as error_data")
async def ajax_endpoint(request: Request,
                        service: IngestionService = Depends(get_ingestion_service),
                        context: RequestContext = Depends(get_request_context)):
    form = await request.form()
    name = str(form.get("action") or "")
    action = ACTIONS.get(name)
    if action is None:
        logger.warning(f"Unknown ajax action requested: {name!r}")
        return ajax_json(AjaxResponse(success=False, message="Unknown action"), status_code=400)

    nonce = form.get("nonce")
    try:
        if not verify_nonce(nonce if isinstance(nonce, str) else None, action.nonce_action):
            raise SecurityError("nonce verification failed")
        if action.admin_only and admin_claims_from_header(request.headers.get("authorization")) is None:
            logger.warning(f"Ajax action '{name}' without admin token from {context.client_ip}")
            return ajax_json(AjaxResponse(success=False, message="Insufficient permissions"), status_code=403)
        return ajax_json(await action.handler(form, service, context))
    except SecurityError as e:
        logger.warning(f"Ajax action '{name}' rejected: {e.reason}")
        return ajax_json(AjaxResponse(success=False, message=e.message))
    except LoggrError as e:
        return ajax_json(AjaxResponse(success=False, message=e.message))
