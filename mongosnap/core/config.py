from dotenv import load_dotenv
import os

load_dotenv()


def _list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "mongosnap")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
REFRESH_SECRET_KEY = os.getenv("REFRESH_SECRET_KEY") or SECRET_KEY
ALGORITHM = os.getenv("ALGORITHM", "HS256")
JWT_ISSUER = os.getenv("JWT_ISSUER", "mongosnap")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "mongosnap-client")

ACCESS_TOKEN_EXPIRE_MINUTES = 15
REFRESH_TOKEN_EXPIRE_DAYS = 7
CSRF_TOKEN_EXPIRE_HOURS = 24
TWO_FACTOR_EXPIRE_MINUTES = 10

CONNECTION_ENCRYPTION_KEY = os.getenv("CONNECTION_ENCRYPTION_KEY", "")
SAMPLE_DATABASE_URI = os.getenv("SAMPLE_DATABASE_URI")
MAX_CONNECTIONS_PER_USER = int(os.getenv("MAX_CONNECTIONS_PER_USER", "2"))
STALE_CONNECTION_MINUTES = int(os.getenv("STALE_CONNECTION_MINUTES", "30"))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600"))
QUERY_TIMEOUT_SECONDS = int(os.getenv("QUERY_TIMEOUT_SECONDS", "30"))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
CORS_ORIGINS = _list(os.getenv("CORS_ORIGINS")) or [FRONTEND_URL]
ADMIN_EMAILS = [email.lower() for email in _list(os.getenv("ADMIN_EMAILS"))]
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
TRUST_PROXY = os.getenv("TRUST_PROXY", "false").lower() == "true"

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
MAIL_PASSWORD = str(os.getenv("MAIL_PASSWORD"))
MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@mongosnap.app")
MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp-relay.brevo.com")
MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "MongoSnap")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
