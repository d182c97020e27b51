import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv  # type: ignore


# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "Proctoring-Backend"
    store_backend: str = "memory"
    storage_backend: str = "local"
    data_dir: Path = Path("data")
    log_level: str = "INFO"

    # Debounce policy
    focus_lost_seconds: float = 5.0
    face_missing_seconds: float = 10.0
    face_missing_min_samples: int = 30
    closed_sessions_retained: int = 1024

    default_confidence: float = 0.8

    # Real-time fan-out
    observer_queue_size: int = 100
    exclude_originator: bool = True

    @property
    def report_dir(self) -> Path:
        return self.data_dir / "reports"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongodb_url=os.getenv("MONGODB_URL", cls.mongodb_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            store_backend=os.getenv("STORE_BACKEND", cls.store_backend).lower(),
            storage_backend=os.getenv("STORAGE_BACKEND", cls.storage_backend).lower(),
            data_dir=Path(os.getenv("DATA_DIR", str(cls.data_dir))),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            focus_lost_seconds=float(os.getenv("FOCUS_LOST_SECONDS", cls.focus_lost_seconds)),
            face_missing_seconds=float(os.getenv("FACE_MISSING_SECONDS", cls.face_missing_seconds)),
            face_missing_min_samples=int(os.getenv("FACE_MISSING_MIN_SAMPLES", cls.face_missing_min_samples)),
            closed_sessions_retained=int(os.getenv("CLOSED_SESSIONS_RETAINED", cls.closed_sessions_retained)),
            default_confidence=float(os.getenv("DEFAULT_CONFIDENCE", cls.default_confidence)),
            observer_queue_size=int(os.getenv("OBSERVER_QUEUE_SIZE", cls.observer_queue_size)),
            exclude_originator=_env_bool("EXCLUDE_ORIGINATOR", cls.exclude_originator),
        )


settings = Settings.from_env()
