from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import os

from core.config import logger, STATIC_DIR  # type: ignore
from core.database import init_db
from core.portal import PORTAL_HEADER

# Routers
from routers import auth, portal, gallery, downloads, dashboard, admin, contact, site  # type: ignore

app = FastAPI(title="Portfolio Client Portal")

# ---- CORS setup ----
_default_origins = ",".join([
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
])
_origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or _default_origins
ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[PORTAL_HEADER],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    return response


@app.on_event("startup")
def _startup():
    init_db()
    logger.info("database tables ready")


# ---- Static mount (local storage fallback) ----
os.makedirs(STATIC_DIR, exist_ok=True)
app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

# ---- Include routers ----
app.include_router(auth.router)
app.include_router(portal.router)
app.include_router(gallery.router)
app.include_router(downloads.router)
app.include_router(dashboard.router)
app.include_router(admin.router)
app.include_router(contact.router)
app.include_router(site.router)


@app.get("/api/health")
async def health():
    return {"ok": True}
