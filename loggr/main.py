import logging
import uuid
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from loggr.api.v1 import router as v1_router
from loggr.api.v1.ajax_routes import validate_action_table
from loggr.api.v1.middlewares.request_logging_middleware import log_request_middleware
from loggr.core.config import check_runtime_config, config
from loggr.core.context import AppContext
from loggr.core.exceptions import LoggrError, SecurityError, StorageError
from loggr.schemas.base import BaseResponse

project_name = "Loggr"

logger = logging.getLogger(__name__)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {str(exc)}")
    details = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
    return JSONResponse(status_code=422,
                        content=BaseResponse.failure(request, "Validation Error",
                                                     error_message="Invalid request data",
                                                     details=details))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    status_code = exc.status_code
    if status_code >= 500:
        logger.error(f"Server error: {exc.detail}")
    elif status_code >= 400:
        logger.warning(f"Client error: {exc.detail}")

    if isinstance(exc.detail, dict):
        # Raised by our own dependencies with an ErrorResponse shaped detail
        error = {"error_message": exc.detail.get("message"),
                 "logout": bool(exc.detail.get("logout", False)),
                 "details": exc.detail.get("details")}
    else:
        auth_failure = status_code in (401, 403)
        message = str(exc.detail)
        if auth_failure:
            message = "Authentication required" if status_code == 401 else "Permission denied"
        error = {"error_message": message, "logout": auth_failure, "details": [{"msg": message}]}

    return JSONResponse(status_code=status_code,
                        content=BaseResponse.failure(request, "Request failed", **error),
                        headers=getattr(exc, "headers", None))


async def loggr_exception_handler(request: Request, exc: LoggrError):
    if isinstance(exc, SecurityError):
        status_code = 403
    elif isinstance(exc, StorageError):
        status_code = 500
        logger.error(f"Storage error: {exc.message}")
    else:
        status_code = 400
    message = exc.client_message if isinstance(exc, SecurityError) else exc.message
    return JSONResponse(status_code=status_code,
                        content=BaseResponse.failure(request, "Request failed", error_message=message))


async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    error_id = f"err_{uuid.uuid4().hex[:10]}"
    return JSONResponse(
        status_code=500,
        content=BaseResponse.failure(
            request, "Internal Server Error",
            error_message=f"An unexpected error occurred (Error ID: {error_id})"))


async def startup_app(app: FastAPI, start_cleanup: Optional[bool] = None) -> None:
    """Validate routing, make sure tables exist and start the retention job."""
    logger.info(f"Starting up {project_name} server...")
    check_runtime_config()
    validate_action_table()
    context: AppContext = app.state.context
    results = await context.schema_manager.ensure_tables()
    failed = [name for name, strategy in results.items() if strategy is None]
    if failed:
        # Keep serving, the admin diagnostics endpoint shows what went wrong
        logger.error(f"Could not create tables: {', '.join(failed)}")
    else:
        logger.info("Database tables ready")

    if start_cleanup is None:
        start_cleanup = config.ENABLE_CLEANUP_JOB
    if start_cleanup:
        context.start_cleanup(config.CLEANUP_INTERVAL_SECONDS)


async def shutdown_app(app: FastAPI) -> None:
    logger.info(f"Shutting down {project_name} server...")
    await app.state.context.close()


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    app = FastAPI(title=f"{project_name} API",
                  description=f"{project_name} client error capture and reporting API",
                  version="1.0.0",
                  docs_url="/docs",
                  redoc_url="/redoc")
    app.state.context = context or AppContext.from_config()

    # CORS middleware configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Disable credentials since we're using allow_origins="*"
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(log_request_middleware)

    app.include_router(v1_router)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(LoggrError, loggr_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/")
    async def root():
        return BaseResponse(message=f"Welcome to {project_name} API")

    @app.get("/health")
    async def health_check():
        return BaseResponse(data={"status": "healthy", "version": app.version})

    @app.on_event("startup")
    async def startup_event():
        await startup_app(app)

    @app.on_event("shutdown")
    async def shutdown_event():
        await shutdown_app(app)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("loggr.main:app",
                host="0.0.0.0",
                port=3348,
                reload=not config.API_PRODUCTION,
                log_level="info")
