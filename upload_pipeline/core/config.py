import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./upload_pipeline.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

# AWS S3 configuration
AWS_S3_BUCKET = os.getenv("AWS_S3_BUCKET", "projects")
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY")
AWS_REGION = os.getenv("AWS_REGION", "eu-north-1")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL")

# Upload sessions
UPLOAD_SESSION_TTL_HOURS = int(os.getenv("UPLOAD_SESSION_TTL_HOURS", "24"))
UPLOAD_SESSION_RETENTION_DAYS = int(os.getenv("UPLOAD_SESSION_RETENTION_DAYS", "7"))
DEFAULT_CHUNK_SIZE = int(os.getenv("DEFAULT_CHUNK_SIZE", str(5 * 1024 * 1024)))  # 5 MiB

# Reconciliation
ABANDONED_UPLOAD_THRESHOLD_HOURS = int(os.getenv("ABANDONED_UPLOAD_THRESHOLD_HOURS", "1"))

# Auth service used by the bearer-token middleware; unset disables the check
AUTH_VERIFY_URL = os.getenv("AUTH_VERIFY_URL")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
