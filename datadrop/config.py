import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


DB_URL = os.getenv("DB_URL", "sqlite:///./datadrop.db")
DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "default-secret-change-me")
OIDC_ISSUER = os.getenv("OIDC_ISSUER", "").rstrip("/")
OIDC_CLIENT_ID = os.getenv("OIDC_CLIENT_ID", "")
FRONTEND_URL = os.getenv("FRONTEND_URL", "")

# Object storage / CDN
AWS_REGION = os.getenv("AWS_REGION", "") or None
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "") or None
BUCKET_NAME = os.getenv("BUCKET_NAME", "datadrop-private")
CDN_BUCKET_NAME = os.getenv("CDN_BUCKET_NAME", "datadrop-cdn")
CDN_URL = os.getenv("CDN_URL", "").rstrip("/")
CLOUDFRONT_DISTRIBUTION_ID = os.getenv("CLOUDFRONT_DISTRIBUTION_ID", "")
UPLOAD_URL_EXPIRES_SECONDS = int(os.getenv("UPLOAD_URL_EXPIRES_SECONDS", "3600"))
DOWNLOAD_URL_EXPIRES_SECONDS = int(os.getenv("DOWNLOAD_URL_EXPIRES_SECONDS", "300"))
VERIFY_UPLOADS_ON_CONFIRM = _flag("VERIFY_UPLOADS_ON_CONFIRM", "false")

# Deletion queue (Redis list when REDIS_URL is set, in-process otherwise)
REDIS_URL = os.getenv("REDIS_URL", "")
DELETION_QUEUE_NAME = os.getenv("DELETION_QUEUE_NAME", "datadrop:file-deletion")

# Background jobs
ENABLE_CLEANER = _flag("ENABLE_CLEANER", "true")
CLEANER_INTERVAL_MINUTES = int(os.getenv("CLEANER_INTERVAL_MINUTES", "5"))
DELETION_POLL_SECONDS = int(os.getenv("DELETION_POLL_SECONDS", "10"))
STALE_MULTIPART_HOURS = int(os.getenv("STALE_MULTIPART_HOURS", "24"))

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
