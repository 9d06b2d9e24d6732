"""
Configuration - env vars, constants, logging setup.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("examdesk")

# Database
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "examdesk")

# Auth
JWT_SECRET = os.environ.get("JWT_SECRET")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

if not JWT_SECRET:
    logger.warning("⚠️ No JWT_SECRET found - using an insecure development secret")
    JWT_SECRET = "examdesk-dev-secret"

ENVIRONMENT = os.environ.get("ENV", os.environ.get("ENVIRONMENT", "development"))

# Flag detection thresholds
ROLL_NUMBER_CONFIDENCE_THRESHOLD = float(os.environ.get("ROLL_NUMBER_CONFIDENCE_THRESHOLD", 70))
AI_CONFIDENCE_THRESHOLD = float(os.environ.get("AI_CONFIDENCE_THRESHOLD", 0.6))
MAX_SHEET_FILE_SIZE = int(os.environ.get("MAX_SHEET_FILE_SIZE", 10 * 1024 * 1024))
ALLOWED_SHEET_FORMATS = ["image/jpeg", "image/png", "application/pdf"]

# Pagination
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def is_development() -> bool:
    return ENVIRONMENT == "development"


def get_version_info():
    """Get deployment version information."""
    git_commit = os.environ.get("GIT_COMMIT_SHA")
    if not git_commit:
        try:
            if os.path.exists(".git_commit"):
                with open(".git_commit", "r") as f:
                    git_commit = f.read().strip()
        except OSError:
            pass

    if not git_commit:
        logger.warning("GIT_COMMIT_SHA not set and .git_commit not found. Build pipeline issue?")
        git_commit = "unknown"

    build_time = os.environ.get("BUILD_TIME", "unknown")

    return {
        "git_commit": git_commit,
        "build_time": build_time,
        "environment": ENVIRONMENT
    }
