import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from coursepay import routes, webhooks
from coursepay.config import get_settings
from coursepay.database import Base, engine
from coursepay.errors import ErrorCode, PaymentError

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger("stripe").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(title="Course Payment Service")

app.include_router(routes.router)
app.include_router(routes.admin_router)
app.include_router(webhooks.router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code.value}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "message": "Validation failed",
                "code": ErrorCode.VALIDATION_FAILED.value,
                "details": [
                    {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                    for error in exc.errors()
                ],
            }
        },
    )
