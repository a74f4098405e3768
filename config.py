"""
Application configuration, read once from the environment at import time.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "haru_sora_cafe")

# "mongo" or "memory"; falls back to memory when no database url is configured
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "mongo" if DATABASE_URL else "memory")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

SEED_ON_STARTUP = os.getenv("SEED_ON_STARTUP", "1") == "1"
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@harusora.cafe")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")

PORT = int(os.getenv("PORT", 8000))
