"""
Runtime configuration

Values are read once from the environment (and a local .env file, if any).
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", 30))

# uEngage courier integration
UENGAGE_BASE = os.getenv("UENGAGE_BASE")
UENGAGE_TOKEN = os.getenv("UENGAGE_TOKEN")
STORE_ID = os.getenv("STORE_ID")
COURIER_TIMEOUT_SECONDS = float(os.getenv("COURIER_TIMEOUT_SECONDS", 10))

OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", 10))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
