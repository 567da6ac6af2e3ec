import os

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

APP_NAME = os.getenv("APP_NAME", "Student Management Server")
APP_VERSION = "2.0.0"

# Roster
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", 8))
QUIZ_MIN_SCORE = int(os.getenv("QUIZ_MIN_SCORE", 0))
QUIZ_MAX_SCORE = int(os.getenv("QUIZ_MAX_SCORE", 10))
DEFAULT_FIRST_ID = "2024001"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
        },
        "uvicorn.access": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
