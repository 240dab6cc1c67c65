import os
from dataclasses import dataclass, field


def is_enabled(flag: str, default: bool = False) -> bool:
    return os.getenv(flag, str(default)).lower() == "true"


def _split_origins(raw: str) -> tuple:
    return tuple(o.strip() for o in raw.split(",") if o.strip())


@dataclass(frozen=True)
class Settings:
    settlement_timeout: float = 10.0
    settlement_workers: int = 4
    seed_sample_data: bool = True
    log_level: str = "INFO"
    cors_origins: tuple = field(default_factory=lambda: ("*",))

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            settlement_timeout=float(os.getenv("LOYALTY_SETTLEMENT_TIMEOUT", "10")),
            settlement_workers=int(os.getenv("LOYALTY_SETTLEMENT_WORKERS", "4")),
            seed_sample_data=is_enabled("LOYALTY_SEED_SAMPLE_DATA", True),
            log_level=os.getenv("LOYALTY_LOG_LEVEL", "INFO").upper(),
            cors_origins=_split_origins(os.getenv("LOYALTY_CORS_ORIGINS", "*")) or ("*",),
        )
