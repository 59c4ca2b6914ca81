import logging

import uvicorn
from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

import config
import database
from services import notifications
from services.errors import CoreError
from routers.requests import router as requests_router
from routers.units import router as units_router, ledger_router
from routers.exchange import router as exchange_router
from routers.obligations import router as obligations_router, return_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="Blood Exchange Coordination API", version="1.0.0")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

@api_router.get("/")
async def root():
    return {"ok": True, "message": "Blood Exchange Coordination API"}

api_router.include_router(requests_router)
api_router.include_router(units_router)
api_router.include_router(ledger_router)
api_router.include_router(exchange_router)
api_router.include_router(obligations_router)
api_router.include_router(return_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

HTTP_CODES = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    content = {"ok": False, "code": HTTP_CODES.get(exc.status_code, "ERROR"), "detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    detail = f"{location}: {first.get('msg', 'invalid input')}" if location else first.get("msg", "invalid input")
    return JSONResponse(status_code=400, content={"ok": False, "code": "VALIDATION", "detail": detail})

@app.on_event("startup")
async def create_indexes():
    await database.ensure_indexes()
    logger.info(f"Connected to database {config.DB_NAME}")

@app.on_event("shutdown")
async def shutdown_db_client():
    await notifications.drain()
    database.close()

def main():
    uvicorn.run("server:app", host=config.HOST, port=config.PORT)

if __name__ == "__main__":
    main()
