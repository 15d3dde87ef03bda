"""
CivicEye Relay - FastAPI Backend
Complaint email relay, anonymous complaint intake and OTP login for the citizen portal
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import uvicorn
import logging
import os
from dotenv import load_dotenv

# Load environment variables BEFORE importing route modules so services see them
load_dotenv()
from datetime import datetime

from routes.complaint_routes import router as complaint_router
from routes.auth_routes import router as auth_router
from services.email_service import EmailService
from utils.rate_limit import limiter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CivicEye Relay",
    description="Complaint notification relay and OTP login for the Smart Civic Issue Reporter",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

app.include_router(complaint_router, prefix="/api", tags=["Complaints"])
app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])


@app.get("/")
async def root():
    """Root endpoint with basic API information"""
    return {
        "message": "CivicEye Relay API",
        "version": "1.0.0",
        "status": "active",
        "endpoints": {
            "health": "/ping",
            "complaints": "/api/send-complaint",
            "anonymous": "/api/complaints/anonymous",
            "auth": "/api/auth",
            "docs": "/docs"
        }
    }


@app.get("/ping")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "civiceye-relay"
    }


@app.get("/api/email/status")
def email_status():
    """Check SMTP configuration & connectivity."""
    return {"connection": EmailService().test_connection()}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc):
    """Errors carry a short `message`, which is what the portal displays"""
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc):
    """Malformed bodies are input errors like any other: 400 with a short message"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    if first.get("type") == "json_invalid":
        message = "Malformed JSON body"
    elif not loc:
        message = "Request body is required"
    else:
        message = f"Invalid value for {loc[0]}"
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Custom 404 handler"""
    return JSONResponse(
        status_code=404,
        content={"message": "Endpoint not found", "path": str(request.url)}
    )


@app.exception_handler(Exception)
async def internal_error_handler(request, exc):
    """Catch-all for unhandled errors; no stack traces reach the client"""
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"message": "Internal server error"}
    )


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_level="info"
    )
