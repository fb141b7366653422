"""
Runtime configuration loaded from the environment (and backend/.env).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import os

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent


def _csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


@dataclass
class Settings:
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "revenue_ledger"
    audit_buffer_size: int = 100
    audit_flush_interval_seconds: float = 30.0
    migration_item_delay_seconds: float = 0.1
    migration_batch_delay_seconds: float = 1.0
    admin_user_ids: List[str] = field(default_factory=list)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    app_env: str = "development"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    settlement_reminder_threshold: float = 1000.0
    settlement_reminder_interval_hours: float = 24.0

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file or ROOT_DIR / '.env')
        defaults = cls()
        return cls(
            mongo_url=os.environ.get('MONGO_URL', defaults.mongo_url),
            db_name=os.environ.get('DB_NAME', defaults.db_name),
            audit_buffer_size=int(os.environ.get('AUDIT_BUFFER_SIZE', defaults.audit_buffer_size)),
            audit_flush_interval_seconds=float(
                os.environ.get('AUDIT_FLUSH_INTERVAL_SECONDS', defaults.audit_flush_interval_seconds)
            ),
            migration_item_delay_seconds=float(
                os.environ.get('MIGRATION_ITEM_DELAY_SECONDS', defaults.migration_item_delay_seconds)
            ),
            migration_batch_delay_seconds=float(
                os.environ.get('MIGRATION_BATCH_DELAY_SECONDS', defaults.migration_batch_delay_seconds)
            ),
            admin_user_ids=_csv(os.environ.get('ADMIN_USER_IDS')),
            jwt_secret_key=os.environ.get('JWT_SECRET_KEY', defaults.jwt_secret_key),
            jwt_algorithm=os.environ.get('JWT_ALGORITHM', defaults.jwt_algorithm),
            app_env=os.environ.get('APP_ENV', defaults.app_env),
            app_version=os.environ.get('APP_VERSION', defaults.app_version),
            log_level=os.environ.get('LOG_LEVEL', defaults.log_level).upper(),
            settlement_reminder_threshold=float(
                os.environ.get('SETTLEMENT_REMINDER_THRESHOLD', defaults.settlement_reminder_threshold)
            ),
            settlement_reminder_interval_hours=float(
                os.environ.get('SETTLEMENT_REMINDER_INTERVAL_HOURS', defaults.settlement_reminder_interval_hours)
            ),
        )
