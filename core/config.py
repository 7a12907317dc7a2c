import os
import logging
from dotenv import load_dotenv
from botocore.client import Config as BotoConfig
import boto3

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("portfolio")


def _clean(value: str) -> str:
    return (value or "").strip().strip('"').strip("'").strip('`')


# Gateway (required). Checked where they are consumed: core/database.py and core/auth.py
GATEWAY_URL = _clean(os.getenv("GATEWAY_URL", ""))
GATEWAY_KEY = _clean(os.getenv("GATEWAY_KEY", ""))

# Object storage (optional, local static/ fallback when unset)
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET = os.getenv("R2_BUCKET", "")
R2_PUBLIC_BASE_URL = _clean(os.getenv("R2_PUBLIC_BASE_URL", "")).rstrip("/")

# Gate policy
DEFAULT_DOWNLOAD_PIN = os.getenv("DEFAULT_DOWNLOAD_PIN", "1234").strip()
ADMIN_SETUP_KEY = os.getenv("ADMIN_SETUP_KEY", "admin123").strip()
SIGNED_URL_TTL_SEC = int(os.getenv("SIGNED_URL_TTL_SEC", "60"))
BULK_DOWNLOAD_DELAY_MS = int(os.getenv("BULK_DOWNLOAD_DELAY_MS", "100"))
PUBLIC_PREVIEW_COUNT = int(os.getenv("PUBLIC_PREVIEW_COUNT", "15"))
ACCESS_TOKEN_TTL_HOURS = int(os.getenv("ACCESS_TOKEN_TTL_HOURS", "168"))
PORTAL_IDLE_TTL_SEC = int(os.getenv("PORTAL_IDLE_TTL_SEC", "1800"))
PORTAL_MAX_SESSIONS = int(os.getenv("PORTAL_MAX_SESSIONS", "5000"))

# Watermark
WATERMARK_TEXT = os.getenv("WATERMARK_TEXT", "PORTFOLIO ©").strip()
WATERMARK_CORNER_TEXT = os.getenv("WATERMARK_CORNER_TEXT", WATERMARK_TEXT).strip()
WATERMARK_QUALITY = 90
DOWNLOAD_FILENAME = os.getenv("DOWNLOAD_FILENAME", "portfolio").strip() or "portfolio"

# Static dir helper
STATIC_DIR = os.path.join(os.path.dirname(__file__), "..", "static")
STATIC_DIR = os.path.abspath(STATIC_DIR)

# S3/R2 resource for storage operations
s3 = None

if R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY:
    s3 = boto3.resource(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )
