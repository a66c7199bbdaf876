import os
import logging
from dataclasses import dataclass, fields, replace

from constants import CONSENT_DEFAULTS, PENDING_TRANSPORTS, REDIRECT_METHODS, WEIGHTING_STRATEGIES, QUEUE_RUNNERS
from utils.env import get_env_str, get_env_bool, get_env_int, get_env_choice, get_database_url
from utils.redaction import redact_database_url

logger = logging.getLogger(__name__)

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# -----------------------------------------------------------------------------
# Dotenv loading (LOCAL ONLY)
# -----------------------------------------------------------------------------
# Rules:
# - Hosted environments must be configured via real environment variables.
# - Tests must be deterministic and must NOT implicitly ingest a developer's repo-root .env.
# - Local dev may use .env for convenience.
_FLASK_ENV_EARLY = (os.getenv("FLASK_ENV") or "").strip().lower()

if _FLASK_ENV_EARLY not in {"test", "testing"}:
    try:
        from dotenv import load_dotenv
        load_dotenv(dotenv_path=os.path.join(BASE_DIR, ".env"), override=False)
    except ImportError:
        # Dotenv is convenience for local dev; a missing install should not crash.
        pass

# -----------------------------------------------------------------------------
# Environment / Stage
# -----------------------------------------------------------------------------
def _normalize_stage(raw: str) -> str:
    raw = (raw or "").strip().lower()
    if raw in {"prod", "production"}:
        return "production"
    if raw in {"stage", "staging"}:
        return "staging"
    if raw in {"test", "testing"}:
        return "test"
    return "dev"


FLASK_ENV = (os.getenv("FLASK_ENV", "development") or "development").strip().lower()
APP_STAGE = _normalize_stage(os.getenv("APP_STAGE", "dev"))

IS_TEST = APP_STAGE == "test" or FLASK_ENV in {"test", "testing"}
IS_STAGING = APP_STAGE == "staging"
IS_PRODUCTION = APP_STAGE == "production"

DEBUG = FLASK_ENV != "production" and not IS_PRODUCTION
TESTING = IS_TEST

# -----------------------------------------------------------------------------
# URLs
# -----------------------------------------------------------------------------
def _strip_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


# Destinations stored as site-relative paths are resolved against this.
SITE_BASE_URL = _strip_trailing_slash(get_env_str("SITE_BASE_URL", default="http://localhost:5000"))

if IS_STAGING or IS_PRODUCTION:
    if not SITE_BASE_URL.lower().startswith("https://"):
        raise RuntimeError(f"CRITICAL: SITE_BASE_URL must be HTTPS in {APP_STAGE} stage. Got: {SITE_BASE_URL}")

# -----------------------------------------------------------------------------
# Database (Postgres-only)
# -----------------------------------------------------------------------------
DATABASE_URL = get_database_url()
if not DATABASE_URL:
    if os.environ.get("ALLOW_MISSING_DB"):
        logger.warning("DATABASE_URL missing but ALLOW_MISSING_DB set. Database calls will fail.")
        DATABASE_URL = "postgresql://missing-database"
    else:
        raise RuntimeError("DATABASE_URL environment variable is required.")

if not DATABASE_URL.startswith("postgresql://"):
    # Never include credentials in errors/logs.
    raise ValueError(
        f"CRITICAL: DATABASE_URL must be a PostgreSQL URL (postgresql://...). Got: {redact_database_url(DATABASE_URL)}. Non-Postgres DBs are forbidden."
    )

# -----------------------------------------------------------------------------
# Secrets
# -----------------------------------------------------------------------------
SECRET_KEY = get_env_str("SECRET_KEY")
if not SECRET_KEY:
    if IS_STAGING or IS_PRODUCTION:
        raise ValueError(f"SECRET_KEY must be set in {APP_STAGE} environment.")
    SECRET_KEY = "dev-secret-key-change-this"
    logger.warning("[Config] WARNING: Using default SECRET_KEY for development. DO NOT use in real environments!")

# Guards /cron/* endpoints. Unset means the endpoints always answer 401.
CRON_TOKEN = get_env_str("CRON_TOKEN")

# -----------------------------------------------------------------------------
# Proxy / Cookie Security
# -----------------------------------------------------------------------------
TRUST_PROXY_HEADERS = get_env_bool("TRUST_PROXY_HEADERS", default=False)
PROXY_FIX_NUM_PROXIES = get_env_int("PROXY_FIX_NUM_PROXIES", default=1)

# Tracking cookies are always Secure in hosted stages; local http dev may opt out.
AD_ATTR_COOKIE_SECURE = get_env_bool("AD_ATTR_COOKIE_SECURE", default=True)
if (IS_STAGING or IS_PRODUCTION) and not AD_ATTR_COOKIE_SECURE:
    logger.warning("[Config] AD_ATTR_COOKIE_SECURE=false ignored outside dev/test.")
    AD_ATTR_COOKIE_SECURE = True

# -----------------------------------------------------------------------------
# Attribution
# -----------------------------------------------------------------------------
AD_ATTR_URL_PREFIX = (get_env_str("AD_ATTR_URL_PREFIX", default="ad") or "ad").strip("/")
AD_ATTR_COOKIE_LIFETIME_DAYS = get_env_int("AD_ATTR_COOKIE_LIFETIME_DAYS", default=90)
AD_ATTR_MAX_SESSION_ENTRIES = get_env_int("AD_ATTR_MAX_SESSION_ENTRIES", default=50)
AD_ATTR_DEDUP_SECONDS = get_env_int("AD_ATTR_DEDUP_SECONDS", default=0)
AD_ATTR_CLICK_DEDUP_SECONDS = get_env_int("AD_ATTR_CLICK_DEDUP_SECONDS", default=0)
AD_ATTR_DEFAULT_CONSENT = get_env_choice("AD_ATTR_DEFAULT_CONSENT", CONSENT_DEFAULTS, default="granted")
AD_ATTR_PENDING_TRANSPORT = get_env_choice("AD_ATTR_PENDING_TRANSPORT", PENDING_TRANSPORTS, default="cookie")
AD_ATTR_REDIRECT_METHOD = get_env_choice("AD_ATTR_REDIRECT_METHOD", REDIRECT_METHODS, default="302")
# last_click | linear | time_decay
AD_ATTR_WEIGHTING = get_env_choice("AD_ATTR_WEIGHTING", WEIGHTING_STRATEGIES, default="last_click")
AD_ATTR_WEIGHTING_HALF_LIFE_DAYS = get_env_int("AD_ATTR_WEIGHTING_HALF_LIFE_DAYS", default=7)

# -----------------------------------------------------------------------------
# Report Queue
# -----------------------------------------------------------------------------
AD_ATTR_QUEUE_ATTEMPTS_PER_ROUND = get_env_int("AD_ATTR_QUEUE_ATTEMPTS_PER_ROUND", default=3)
AD_ATTR_QUEUE_RETRY_DELAY = get_env_int("AD_ATTR_QUEUE_RETRY_DELAY", default=60)
AD_ATTR_QUEUE_MAX_ROUNDS = get_env_int("AD_ATTR_QUEUE_MAX_ROUNDS", default=3)
AD_ATTR_QUEUE_ROUND_DELAY = get_env_int("AD_ATTR_QUEUE_ROUND_DELAY", default=6 * 3600)
AD_ATTR_QUEUE_BATCH_SIZE = get_env_int("AD_ATTR_QUEUE_BATCH_SIZE", default=10)
AD_ATTR_QUEUE_STALE_MINUTES = get_env_int("AD_ATTR_QUEUE_STALE_MINUTES", default=5)
# 'worker' -> scripts/async_worker.py drains the queue; 'thread' -> in-process timer.
AD_ATTR_QUEUE_RUNNER = get_env_choice("AD_ATTR_QUEUE_RUNNER", QUEUE_RUNNERS, default="worker")

# -----------------------------------------------------------------------------
# Retention
# -----------------------------------------------------------------------------
AD_ATTR_QUEUE_DONE_RETENTION_DAYS = get_env_int("AD_ATTR_QUEUE_DONE_RETENTION_DAYS", default=30)
AD_ATTR_QUEUE_FAILED_RETENTION_DAYS = get_env_int("AD_ATTR_QUEUE_FAILED_RETENTION_DAYS", default=90)
AD_ATTR_CLICK_ID_RETENTION_DAYS = get_env_int("AD_ATTR_CLICK_ID_RETENTION_DAYS", default=120)


@dataclass(frozen=True)
class AttributionSettings:
    """
    Resolved engine settings, built once at startup and handed to every component.

    Field names match the AD_ATTR_* config keys (lower-cased, prefix dropped),
    so Flask test_config can override any of them.
    """
    secret_key: str
    site_base_url: str = SITE_BASE_URL
    url_prefix: str = "ad"
    cookie_lifetime_days: int = 90
    cookie_secure: bool = True
    max_session_entries: int = 50
    dedup_seconds: int = 0
    click_dedup_seconds: int = 0
    default_consent: str = "granted"
    pending_transport: str = "cookie"
    redirect_method: str = "302"
    weighting: str = "last_click"
    weighting_half_life_days: int = 7
    queue_attempts_per_round: int = 3
    queue_retry_delay: int = 60
    queue_max_rounds: int = 3
    queue_round_delay: int = 6 * 3600
    queue_batch_size: int = 10
    queue_stale_minutes: int = 5
    queue_runner: str = "worker"
    queue_done_retention_days: int = 30
    queue_failed_retention_days: int = 90
    click_id_retention_days: int = 120

    @property
    def cookie_lifetime_seconds(self) -> int:
        return self.cookie_lifetime_days * 86400

    @property
    def dedup_cookie_seconds(self) -> int:
        # Dedup marker never outlives the session it protects.
        return min(self.dedup_seconds, self.cookie_lifetime_seconds)

    @property
    def retry_defaults(self) -> dict:
        return {
            "attempts_per_round": self.queue_attempts_per_round,
            "retry_delay": self.queue_retry_delay,
            "max_rounds": self.queue_max_rounds,
            "round_delay": self.queue_round_delay,
        }

    @classmethod
    def from_config(cls, mapping=None) -> "AttributionSettings":
        """
        Build settings from module-level config, overlaid with a Flask config mapping.

        Keys in the mapping use the AD_ATTR_* spelling (e.g. AD_ATTR_DEDUP_SECONDS).
        """
        settings = cls(
            secret_key=SECRET_KEY,
            site_base_url=SITE_BASE_URL,
            url_prefix=AD_ATTR_URL_PREFIX,
            cookie_lifetime_days=AD_ATTR_COOKIE_LIFETIME_DAYS,
            cookie_secure=AD_ATTR_COOKIE_SECURE,
            max_session_entries=AD_ATTR_MAX_SESSION_ENTRIES,
            dedup_seconds=AD_ATTR_DEDUP_SECONDS,
            click_dedup_seconds=AD_ATTR_CLICK_DEDUP_SECONDS,
            default_consent=AD_ATTR_DEFAULT_CONSENT,
            pending_transport=AD_ATTR_PENDING_TRANSPORT,
            redirect_method=AD_ATTR_REDIRECT_METHOD,
            weighting=AD_ATTR_WEIGHTING,
            weighting_half_life_days=AD_ATTR_WEIGHTING_HALF_LIFE_DAYS,
            queue_attempts_per_round=AD_ATTR_QUEUE_ATTEMPTS_PER_ROUND,
            queue_retry_delay=AD_ATTR_QUEUE_RETRY_DELAY,
            queue_max_rounds=AD_ATTR_QUEUE_MAX_ROUNDS,
            queue_round_delay=AD_ATTR_QUEUE_ROUND_DELAY,
            queue_batch_size=AD_ATTR_QUEUE_BATCH_SIZE,
            queue_stale_minutes=AD_ATTR_QUEUE_STALE_MINUTES,
            queue_runner=AD_ATTR_QUEUE_RUNNER,
            queue_done_retention_days=AD_ATTR_QUEUE_DONE_RETENTION_DAYS,
            queue_failed_retention_days=AD_ATTR_QUEUE_FAILED_RETENTION_DAYS,
            click_id_retention_days=AD_ATTR_CLICK_ID_RETENTION_DAYS,
        )
        if not mapping:
            return settings

        overrides = {}
        if mapping.get("SECRET_KEY"):
            overrides["secret_key"] = mapping["SECRET_KEY"]
        if mapping.get("SITE_BASE_URL"):
            overrides["site_base_url"] = _strip_trailing_slash(mapping["SITE_BASE_URL"])
        for field in fields(cls):
            key = f"AD_ATTR_{field.name.upper()}"
            if key in mapping:
                overrides[field.name] = mapping[key]
        if "url_prefix" in overrides:
            overrides["url_prefix"] = str(overrides["url_prefix"]).strip("/")
        return replace(settings, **overrides)
