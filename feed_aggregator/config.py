"""
Process configuration, read from the environment (and a .env file when present).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv


DEFAULT_PROMPTS_PATH = Path(__file__).parent / "prompts.yaml"
DEFAULT_DIRECT_EXTRACTION_PREFIXES = ("dust2.com.br/noticias/",)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass
class AggregatorConfig:
    """Runtime settings for the aggregation core"""

    database_path: str = "data/feeds.db"
    gemini_api_key: str = ""
    gemini_model: Optional[str] = None
    ai_timeout: float = 90.0

    # Orchestrator budgets, seconds
    global_timeout: float = 600.0
    channel_timeout: float = 120.0
    schedule_interval: float = 3600.0

    recency_days: int = 7
    parser_ai_fallback: bool = False
    direct_extraction_prefixes: Tuple[str, ...] = DEFAULT_DIRECT_EXTRACTION_PREFIXES

    log_level: str = "INFO"
    log_dir: str = "logs"
    prompts_path: Path = field(default=DEFAULT_PROMPTS_PATH)

    @classmethod
    def from_env(cls) -> 'AggregatorConfig':
        load_dotenv()

        prefixes_raw = os.getenv('DIRECT_EXTRACTION_PREFIXES')
        if prefixes_raw is None:
            prefixes = DEFAULT_DIRECT_EXTRACTION_PREFIXES
        else:
            prefixes = tuple(p.strip() for p in prefixes_raw.split(',') if p.strip())

        return cls(
            database_path=os.getenv('FEED_DB_PATH', 'data/feeds.db'),
            gemini_api_key=os.getenv('GEMINI_API_KEY', ''),
            gemini_model=os.getenv('GEMINI_MODEL') or None,
            ai_timeout=_env_float('AI_TIMEOUT_SECONDS', 90.0),
            global_timeout=_env_float('FEED_GLOBAL_TIMEOUT', 600.0),
            channel_timeout=_env_float('FEED_CHANNEL_TIMEOUT', 120.0),
            schedule_interval=_env_float('FEED_SCHEDULE_INTERVAL', 3600.0),
            recency_days=int(_env_float('FEED_RECENCY_DAYS', 7)),
            parser_ai_fallback=_env_bool('PARSER_AI_FALLBACK', False),
            direct_extraction_prefixes=prefixes,
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_dir=os.getenv('LOG_DIR', 'logs'),
            prompts_path=Path(os.getenv('PROMPTS_PATH') or DEFAULT_PROMPTS_PATH),
        )


def load_prompts(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load AI prompt templates from YAML."""
    prompts_path = Path(path or DEFAULT_PROMPTS_PATH)
    try:
        with open(prompts_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Prompts file not found at {prompts_path}") from e
