import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL   = os.getenv("DATABASE_URL", "postgresql+asyncpg://tracker:tracker@db:5432/tracker")
REDIS_URL      = os.getenv("REDIS_URL", "redis://redis:6379")
FIX_STREAM     = os.getenv("FIX_STREAM", "fixes")
WORKER_GROUP   = os.getenv("WORKER_GROUP", "recorder-group")
WORKER_CONSUMER = os.getenv("WORKER_CONSUMER", "recorder-1")
LOG_DIR        = os.getenv("LOG_DIR", "logs")
LOG_LEVEL      = os.getenv("LOG_LEVEL", "INFO").upper()
DB_ECHO        = os.getenv("DB_ECHO", "false").lower() == "true"
REPORT_DIR     = os.getenv("REPORT_DIR", "reports")
REPORT_TZ      = os.getenv("REPORT_TZ", "UTC")
DATA_RETENTION_DAYS = int(os.getenv("DATA_RETENTION_DAYS", 30))
ALLOWED_DEVICES = {
    int(d) for d in os.getenv("ALLOWED_DEVICES", "").split(",") if d.isdigit()
}
