import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",") if origin.strip()]

# Empty means the admin endpoints refuse every request
ADMIN_KEY = os.getenv("ADMIN_KEY", "")

STATUS_INTERVAL_SECONDS = int(os.getenv("STATUS_INTERVAL_SECONDS", 30))

VERSION = os.getenv("VERSION", "0.2.0")
