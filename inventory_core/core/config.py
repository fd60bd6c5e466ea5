# inventory_core/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Inventory Core")

    # ---------- Database ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "inventory")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "inventory")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "inventory_core")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "sqlite")

    SQLITE_PATH: str = os.getenv("SQLITE_PATH", "./inventory.db")

    DATABASE_URL: str = os.getenv("DATABASE_URL") or (
        f"sqlite:///{SQLITE_PATH}" if DB_DRIVER == "sqlite" else
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}")

    SQL_ECHO: bool = _flag("SQL_ECHO")

    # ---------- Locale ----------
    TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Kuala_Lumpur")
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "MYR")

    # ---------- Allocation ----------
    # FIFO | LIFO | FEFO
    DEFAULT_ISSUE_POLICY: str = os.getenv("DEFAULT_ISSUE_POLICY",
                                          "FIFO").strip().upper()
    ALLOW_EXPIRED_ALLOCATION: bool = _flag("ALLOW_EXPIRED_ALLOCATION")
    ALLOCATION_MAX_RETRIES: int = int(os.getenv("ALLOCATION_MAX_RETRIES",
                                                "3"))

    # ---------- Document numbers ----------
    RECEIPT_NUMBER_PREFIX: str = os.getenv("RECEIPT_NUMBER_PREFIX", "PR")
    RECEIPT_NUMBER_PAD: int = int(os.getenv("RECEIPT_NUMBER_PAD", "4"))
    NUMBER_SERIES_MAX_RETRIES: int = int(
        os.getenv("NUMBER_SERIES_MAX_RETRIES", "5"))

    # ---------- Alerts ----------
    EXPIRY_WARNING_DAYS: int = int(os.getenv("EXPIRY_WARNING_DAYS", "30"))
    ALERT_SCAN_INTERVAL_SECONDS: int = int(
        os.getenv("ALERT_SCAN_INTERVAL_SECONDS", "3600"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
