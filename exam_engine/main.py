import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from exam_engine.core.config import settings
from exam_engine.core.database import init_db
from exam_engine.core.errors import ExamEngineError
from exam_engine.api.auth import router as auth_router
from exam_engine.api.author import router as author_router
from exam_engine.api.templates import router as templates_router
from exam_engine.api.exams import router as exams_router
from exam_engine.api.attempts import router as attempts_router
from exam_engine.api.admin import router as admin_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION} ({settings.ENVIRONMENT})")
    init_db()
    yield
    logger.info("Shutdown complete")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

v1 = settings.API_V1_PREFIX
app.include_router(auth_router, prefix=f"{v1}/auth", tags=["auth"])
app.include_router(author_router, prefix=f"{v1}/author", tags=["authoring"])
app.include_router(templates_router, prefix=v1, tags=["exam-templates"])
app.include_router(exams_router, prefix=f"{v1}/exams", tags=["exams"])
app.include_router(attempts_router, prefix=f"{v1}/exams", tags=["attempts"])
app.include_router(admin_router, prefix=f"{v1}/admin", tags=["admin"])


@app.exception_handler(ExamEngineError)
async def engine_error_handler(request: Request, exc: ExamEngineError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": jsonable_encoder(exc.to_dict())})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.detail, "type": "http_error", "status_code": exc.status_code}},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": {
            "message": "Validation error", "type": "validation_error",
            "status_code": status.HTTP_422_UNPROCESSABLE_ENTITY, "details": jsonable_encoder(exc.errors()),
        }},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    message = "An internal error occurred" if settings.is_production() else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": message, "type": "internal_error", "status_code": 500}},
    )


@app.get("/health")
def health(): return {"status": "ok", "version": settings.APP_VERSION}
