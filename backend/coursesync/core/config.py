from pydantic_settings import BaseSettings
from pydantic import validator
from typing import List


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Course Session Sync"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./coursesync.db"
    DATABASE_ECHO: bool = False
    SQLITE_BUSY_TIMEOUT_MS: int = 5000  # the run executor and API sessions write concurrently

    # Aggregation settings
    MORNING_LAST_PERIOD: int = 4  # periods 1-4 are morning, 5+ afternoon
    ROOM_PLACEHOLDER: str = "无"

    # Sync run defaults (callers may override per run)
    DEFAULT_BATCH_SIZE: int = 50
    DEFAULT_RETRY_COUNT: int = 0
    DEFAULT_STEP_TIMEOUT_SECONDS: int = 1800

    # Task orchestration
    TASK_RECOVERY_POLICY: str = "fail"  # "fail" or "requeue"
    TASK_PAUSE_POLL_SECONDS: float = 2.0

    # Scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_TERM: str = ""
    SCHEDULER_CHECK_INTERVAL_SECONDS: int = 60
    INCREMENTAL_SYNC_CRON: str = "*/30 * * * *"
    FULL_SYNC_CRON: str = ""

    # Attendance
    ATTENDANCE_AUTO_CLOSE_HOURS: int = 2

    @validator("ALLOWED_ORIGINS", pre=True)
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("TASK_RECOVERY_POLICY")
    def validate_recovery_policy(cls, v):
        if v not in ("fail", "requeue"):
            raise ValueError("TASK_RECOVERY_POLICY must be 'fail' or 'requeue'")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
