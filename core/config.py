import os
import logging
from dataclasses import dataclass
from functools import lru_cache
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass


def _clean(value: str) -> str:
    return (value or "").strip().strip('"').strip("'").strip("`")


# Webhook (Eduzz)
# Legacy integrations still ship the "origin secret" name
EDUZZ_WEBHOOK_SECRET = _clean(
    os.getenv("EDUZZ_WEBHOOK_SECRET")
    or os.getenv("EDUZZ_ORIGIN_SECRET")
    or ""
)

# Email (Resend)
RESEND_API_KEY = _clean(os.getenv("RESEND_API_KEY", ""))
RESEND_FROM_EMAIL = _clean(os.getenv("RESEND_FROM_EMAIL", ""))
RESEND_API_URL = _clean(os.getenv("RESEND_API_URL", "https://api.resend.com/emails"))
EMAIL_TIMEOUT_SEC = float(os.getenv("EMAIL_TIMEOUT_SEC", "15"))

# Public app
APP_NAME = os.getenv("APP_NAME", "Banco de Questões")
APP_BASE_URL = _clean(os.getenv("APP_BASE_URL") or os.getenv("NEXT_PUBLIC_APP_URL") or "").rstrip("/")
STUDENT_LOGIN_PATH = os.getenv("STUDENT_LOGIN_PATH", "/aluno/entrar")

# Firebase Admin
FIREBASE_PROJECT_ID = _clean(os.getenv("FIREBASE_PROJECT_ID") or os.getenv("FIREBASE_ADMIN_PROJECT_ID") or "")
FIREBASE_SERVICE_ACCOUNT_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "")
FIREBASE_SERVICE_ACCOUNT_JSON_PATH = _clean(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH", ""))
FIREBASE_ADMIN_CLIENT_EMAIL = _clean(os.getenv("FIREBASE_ADMIN_CLIENT_EMAIL", ""))
# Hosting panels store the PEM with literal "\n"
FIREBASE_ADMIN_PRIVATE_KEY = (os.getenv("FIREBASE_ADMIN_PRIVATE_KEY", "") or "").replace("\\n", "\n")

# Firestore collections
ENTITLEMENTS_COLLECTION = os.getenv("ENTITLEMENTS_COLLECTION", "entitlements")
EVENTS_COLLECTION = os.getenv("EDUZZ_EVENTS_COLLECTION", "eduzz_events")
USERS_COLLECTION = os.getenv("USERS_COLLECTION", "users")

ALLOWED_ORIGINS = [
    o.strip()
    for o in (os.getenv("ALLOWED_ORIGINS") or "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("qbank")

# Templates dir helper
TEMPLATES_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "templates"))


@dataclass(frozen=True)
class WebhookSettings:
    """Everything the delivery handler needs from the environment."""

    webhook_secret: str
    resend_api_key: str
    resend_from_email: str
    app_base_url: str
    app_name: str = APP_NAME
    student_login_path: str = STUDENT_LOGIN_PATH

    @property
    def credential_continue_url(self) -> str:
        path = self.student_login_path if self.student_login_path.startswith("/") else "/" + self.student_login_path
        return f"{self.app_base_url}{path}" if self.app_base_url else ""


@lru_cache(maxsize=1)
def get_webhook_settings() -> WebhookSettings:
    settings = WebhookSettings(
        webhook_secret=EDUZZ_WEBHOOK_SECRET,
        resend_api_key=RESEND_API_KEY,
        resend_from_email=RESEND_FROM_EMAIL,
        app_base_url=APP_BASE_URL,
    )
    if not settings.webhook_secret:
        logger.error("[config] EDUZZ_WEBHOOK_SECRET is not set; webhook deliveries will fail with 500")
    if not settings.resend_api_key or not settings.resend_from_email:
        logger.warning("[config] Resend not configured; welcome emails will not be delivered")
    return settings
