from pathlib import Path
from pydantic import BaseModel
import os
from dotenv import load_dotenv
from recipe_feed_server import __version__

# Optionally load a repo-level config.env file for local development so users
# can keep API keys out of shell history. Copy `backend/config.sample.env` to
# `backend/config.env`.
_cfg_override = os.getenv('FEED_SERVER_CONFIG_FILE')
_cfg_candidates = []
if _cfg_override:
    _cfg_candidates.append(Path(_cfg_override))
_cfg_candidates.append(Path.cwd() / 'config.env')
_cfg_candidates.append(Path.cwd() / 'backend' / 'config.env')

for _p in _cfg_candidates:
    if _p.exists():
        load_dotenv(str(_p))
        break

"""Central configuration.

Env vars:
  FEED_SERVER_DATA_DIR      - directory for writable application data (created)
  FEED_SERVER_DATABASE_URL  - explicit SQLAlchemy URL (overrides the data dir db)
  FEED_SERVER_LOG_LEVEL     - root log level
  FEED_SERVER_VERSION       - override reported version

Metrics / ranking / remote service tunables are read below; see
`config.sample.env` for the full list.
"""

_diagnostics: list[str] = []


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        _diagnostics.append(f"invalid_float {name}={value!r} using={default}")
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        _diagnostics.append(f"invalid_int {name}={value!r} using={default}")
        return default


env_data_dir = os.getenv('FEED_SERVER_DATA_DIR')
data_dir = Path(env_data_dir) if env_data_dir else Path.cwd() / 'data'
try:
    data_dir.mkdir(parents=True, exist_ok=True)
    _diagnostics.append(f"selected_data_dir={data_dir}")
except OSError as e:  # pragma: no cover
    _diagnostics.append(f"data_dir_failed path={data_dir} err={e}")

database_url = os.getenv('FEED_SERVER_DATABASE_URL') or f'sqlite:///{data_dir / "feed.db"}'


class Settings(BaseModel):
    app_name: str = 'Recipe Feed Backend'
    database_url: str = database_url
    api_v1_prefix: str = '/api/v1'
    version: str = os.getenv('FEED_SERVER_VERSION', __version__)
    data_dir: Path = data_dir
    # Logging level for the backend (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_level: str = os.getenv('FEED_SERVER_LOG_LEVEL', 'INFO')

    # playback metrics aggregation
    metrics_flush_interval_seconds: float = _env_float('METRICS_FLUSH_INTERVAL_SECONDS', 3.0)
    metrics_position_delta_ms: int = _env_int('METRICS_POSITION_DELTA_MS', 5000)
    metrics_completion_ratio: float = _env_float('METRICS_COMPLETION_RATIO', 0.9)
    # sessions with no samples for this long are closed; 0 disables
    metrics_idle_timeout_seconds: float = _env_float('METRICS_IDLE_TIMEOUT_SECONDS', 300.0)

    # ranking
    feed_page_size: int = _env_int('FEED_PAGE_SIZE', 5)
    embedding_dimensions: int = _env_int('EMBEDDING_DIMENSIONS', 384)
    embedding_max_input_chars: int = _env_int('EMBEDDING_MAX_INPUT_CHARS', 8000)

    # remote calls
    remote_max_attempts: int = _env_int('REMOTE_MAX_ATTEMPTS', 3)
    remote_base_delay_seconds: float = _env_float('REMOTE_BASE_DELAY_SECONDS', 1.0)
    remote_max_delay_seconds: float = _env_float('REMOTE_MAX_DELAY_SECONDS', 5.0)

    ai_api_base_url: str = os.getenv('AI_API_BASE_URL', 'https://api.openai.com/v1')
    ai_api_key: str | None = os.getenv('AI_API_KEY')
    ai_chat_model: str = os.getenv('AI_CHAT_MODEL', 'gpt-4o-mini')
    ai_embedding_model: str = os.getenv('AI_EMBEDDING_MODEL', 'text-embedding-3-small')

    image_api_base_url: str = os.getenv('IMAGE_API_BASE_URL', 'https://api.us1.bfl.ai/v1')
    image_api_key: str | None = os.getenv('IMAGE_API_KEY')
    image_poll_attempts: int = _env_int('IMAGE_POLL_ATTEMPTS', 30)
    image_poll_interval_seconds: float = _env_float('IMAGE_POLL_INTERVAL_SECONDS', 1.0)

    diagnostics: list[str] | None = _diagnostics

settings = Settings()
