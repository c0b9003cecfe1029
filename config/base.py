# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default):
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default


def _parse_int_list(value, *, minimum=1, maximum=100):
    """
    Parse a comma-separated list of integers with optional bounds.
    """

    if not value:
        return []

    parsed: list[int] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            continue
        if number < minimum or number > maximum:
            continue
        if number not in parsed:
            parsed.append(number)
    return parsed


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_DIR = os.environ.get("LOG_DIR")
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=False)

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 10, minimum=1)

    # Row processing
    IMPORTER_MAX_WORKERS = _coerce_int(os.environ.get("IMPORTER_MAX_WORKERS"), 4, minimum=1)
    IMPORTER_STORE_RETRY_LIMIT = _coerce_int(os.environ.get("IMPORTER_STORE_RETRY_LIMIT"), 3, minimum=1)
    IMPORTER_STORE_RETRY_BACKOFF = _coerce_float(os.environ.get("IMPORTER_STORE_RETRY_BACKOFF"), 0.05)
    IMPORTER_PROGRESS_FLUSH_ROWS = _coerce_int(os.environ.get("IMPORTER_PROGRESS_FLUSH_ROWS"), 25, minimum=1)
    IMPORTER_AUTO_CREATE_REFERENCES = _coerce_bool(
        os.environ.get("IMPORTER_AUTO_CREATE_REFERENCES"),
        default=True,
    )

    # Previews and sessions
    IMPORTER_PREVIEW_ROW_LIMIT = _coerce_int(os.environ.get("IMPORTER_PREVIEW_ROW_LIMIT"), 10, minimum=1)
    IMPORTER_PREVIEW_TTL_MINUTES = _coerce_int(os.environ.get("IMPORTER_PREVIEW_TTL_MINUTES"), 30, minimum=1)
    IMPORTER_SESSION_TTL_MINUTES = _coerce_int(os.environ.get("IMPORTER_SESSION_TTL_MINUTES"), 60, minimum=1)

    _raw_page_sizes = os.environ.get("IMPORTER_RUNS_PAGE_SIZES", "25,50,100")
    _parsed_page_sizes = _parse_int_list(_raw_page_sizes, minimum=5, maximum=500) or [25, 50, 100]
    IMPORTER_RUNS_PAGE_SIZE_DEFAULT = _coerce_int(
        os.environ.get("IMPORTER_RUNS_PAGE_SIZE_DEFAULT"),
        _parsed_page_sizes[0],
        minimum=1,
    )
    if IMPORTER_RUNS_PAGE_SIZE_DEFAULT not in _parsed_page_sizes:
        _parsed_page_sizes.insert(0, IMPORTER_RUNS_PAGE_SIZE_DEFAULT)
    IMPORTER_RUNS_PAGE_SIZES = tuple(sorted(set(_parsed_page_sizes)))


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, even on Windows
    db_path = os.path.join(instance_path, "docket_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_STORE_RETRY_BACKOFF = 0.0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
