import os

# Database URL (use PostgreSQL in prod, SQLite for dev)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./idp.db")

# Session cookie signing
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-here")
ALGORITHM = "HS256"
SESSION_COOKIE = os.getenv("SESSION_COOKIE", "idp_session")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

# Reported in token validation responses
ISSUER = os.getenv("ISSUER", "idp")
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")

# Life times (minutes)
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))
SESSION_EXPIRE_MINUTES = int(os.getenv("SESSION_EXPIRE_MINUTES", "2880"))
GRANT_REQUEST_EXPIRE_MINUTES = int(os.getenv("GRANT_REQUEST_EXPIRE_MINUTES", "15"))
CLEANER_INTERVAL_MINUTES = int(os.getenv("CLEANER_INTERVAL_MINUTES", "15"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "plain")  # "plain" or "json"

# Fixed client apps, registered (or updated) on startup
FIXED_CLIENTS = {
    "gin": {
        "secret": os.getenv("GIN_CLIENT_SECRET", "secret"),
        "redirect_uris": ["http://localhost:8001/auth/callback"],
        "scope": {
            "repo-read": "Read access to your repositories",
            "repo-write": "Write access to your repositories",
            "account-read": "Read access to your account data",
        },
    },
}
