from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from core.config import logger, ALLOWED_ORIGINS, APP_NAME  # type: ignore

# Routers
from routers import eduzz_delivery, student_access  # type: ignore

app = FastAPI(title=f"{APP_NAME} API")

# ---- CORS setup ----
# Only the student portal calls this API from a browser; the webhook is server-to-server
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


app.include_router(eduzz_delivery.router)
app.include_router(student_access.router)


@app.get("/health")
async def health():
    return {"ok": True}


logger.info(f"{APP_NAME} API ready")
