from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
import os
from dotenv import load_dotenv
import logging

from .services.errors import InsightsError

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Import routers
from .api import functions

CORS_HEADERS = {
    "Access-Control-Allow-Origin": os.getenv("CORS_ORIGINS", "*"),
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
}

# Create FastAPI app
app = FastAPI(
    title="InsightsLM - Notebook and Chat Functions",
    description="Serverless endpoints that create notebooks and relay chat messages to the AI backend",
    version="1.0.0"
)

@app.middleware("http")
async def cors(request: Request, call_next):
    """Answer pre-flight requests with 204 and add CORS headers to everything else"""
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response

# Include routers
app.include_router(functions.router)

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "InsightsLM - Notebook and Chat Functions",
        "version": "1.0.0",
        "status": "running"
    }

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "insightslm-functions",
        "version": "1.0.0"
    }

@app.exception_handler(InsightsError)
async def insights_exception_handler(request, exc: InsightsError):
    logger.error(f"{exc.kind} error: {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"error": exc.message}
    )

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": str(exc) or "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(app, host=host, port=port, reload=debug)
