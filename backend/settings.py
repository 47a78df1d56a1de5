import logging
import os

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(__file__)

# Values already present in the environment win over the .env file.
load_dotenv(os.path.join(BASE_DIR, ".env"))

APP_NAME = "receipt-split-backend"
APP_VERSION = "0.5.0"

SPLIT_API_BASE_URL = os.getenv("SPLIT_API_BASE_URL", "http://localhost:8000").rstrip("/")
SPLIT_API_TIMEOUT_SEC = float(os.getenv("SPLIT_API_TIMEOUT_SEC", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
