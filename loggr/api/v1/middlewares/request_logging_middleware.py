from fastapi import Request
import logging
import time
import uuid
from typing import Callable, Optional
from loggr.core.request_context import RequestContext, resolve_client_ip
from loggr.core.security import decode_access_token

logger = logging.getLogger(__name__)


def extract_user_id_from_token(request: Request) -> Optional[int]:
    """User id carried by a bearer token, if the caller sent one"""
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token_data = decode_access_token(auth_header.replace("Bearer ", ""))
    if token_data and token_data.get("uid") is not None:
        try:
            return int(token_data["uid"])
        except (TypeError, ValueError):
            return None
    return None


def build_request_context(request: Request) -> RequestContext:
    peer_ip = request.client.host if request.client else None
    return RequestContext(
        request_id=getattr(request.state, "request_id", None),
        client_ip=resolve_client_ip(request.headers, peer_ip),
        peer_ip=peer_ip,
        user_agent=request.headers.get("user-agent", ""),
        referer=request.headers.get("referer"),
        user_id=extract_user_id_from_token(request),
    )


async def log_request_middleware(request: Request, call_next: Callable):
    """Tag the request with an id and a RequestContext, and log its outcome with timing"""
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id", "")[:64] or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.request_context = build_request_context(request)

    label = f"{request.method} {request.url.path}"
    logger.debug(f"Request started: {label} - RequestID: {request_id}")
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"Request failed: {label} - Error: {str(e)} "
                     f"({time.perf_counter() - started:.3f}s) - RequestID: {request_id}", exc_info=True)
        raise

    logger.info(f"{label} -> {response.status_code} "
                f"({time.perf_counter() - started:.3f}s) - RequestID: {request_id}")
    response.headers["X-Request-ID"] = request_id
    return response
