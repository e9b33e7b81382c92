import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'marksync.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CHANGES_PAGE_LIMIT = int(os.environ.get("CHANGES_PAGE_LIMIT", "200"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"


class ClientConfig:
    BASE_URL = os.environ.get("MARKSYNC_URL", "http://127.0.0.1:8072")
    TOKEN = os.environ.get("MARKSYNC_TOKEN", "")
    TIMEOUT = float(os.environ.get("MARKSYNC_TIMEOUT", "10"))
    POLL_INTERVAL = float(os.environ.get("MARKSYNC_POLL_INTERVAL", "2"))
