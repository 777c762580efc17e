#!/usr/bin/env python3
"""
Configuration management for the Blog Relevance Analyzer.

Holds the logging setup, the `Config` singleton built from the environment
(plus optional .env and YAML secrets files) and the filter configuration that
narrows the blog directory down to the feeds a run scans.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, List, Optional, TypeVar
from dataclasses import dataclass, field
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

N = TypeVar("N", int, float)

LEVELS = {
    "DEBUG": DEBUG,
    "INFO": INFO,
    "WARNING": WARNING,
    "ERROR": ERROR,
}

QUIET_LIBRARIES = ("aiohttp", "aiohttp.client", "httpx", "opentelemetry", "azure", "azure.monitor")


def _setup_global_logger():
    """Configure the root logger once for every module.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR. Defaults to WARNING so log
            records do not interleave with the live progress lines
        LOG_TIMESTAMPS: Prefix records with a timestamp (true/false), defaults to true
        THIRD_PARTY_LOG_LEVEL: Level for aiohttp/httpx/opentelemetry/azure loggers, defaults to WARNING

    Records go to stderr. Modules get their logger from get_logger().
    """
    level = LEVELS.get(environ.get("LOG_LEVEL", "WARNING").upper(), WARNING)

    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    # stdout is reserved for progress lines and reports
    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stderr)], force=True)

    library_level = LEVELS.get(environ.get("THIRD_PARTY_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in QUIET_LIBRARIES:
        getLogger(name).setLevel(library_level)

    return getLogger("BlogAnalyzer")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "analyzer", "llm_client")

    Returns:
        A logger named "BlogAnalyzer.{name}"
    """
    return getLogger(f"BlogAnalyzer.{name}")


logger = _setup_global_logger()

DEFAULT_LANGUAGES = ["en"]
MAX_SECRETS_FILE_SIZE = 2 * 1024 * 1024


def _read_yaml(file_path: str, kind: str, max_size: Optional[int] = None) -> Any:
    """Read a YAML (or JSON) document.

    Returns None for a missing file; raises ValueError when the file exists
    but cannot be read or parsed.
    """
    if not path.isfile(file_path):
        return None
    if not access(file_path, R_OK):
        raise ValueError(f"No read permission for {kind} file at {file_path}")
    if max_size is not None and path.getsize(file_path) > max_size:
        raise ValueError(f"{kind.capitalize()} file too large: {file_path} (limit: {max_size} bytes)")
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Unable to read {kind} at {file_path}: {e}") from e


@dataclass
class FilterConfig:
    """Normalized filter configuration.

    ``allowed_categories`` is ``None`` when every category is accepted.
    """
    allowed_languages: List[str] = field(default_factory=lambda: list(DEFAULT_LANGUAGES))
    allowed_categories: Optional[List[str]] = None


class Config:
    """Runtime settings for the analyzer.

    Sources, from lowest to highest precedence:
    1. .env file next to this module (only fills variables that are not set)
    2. Environment variables
    3. YAML secrets file named by SECRETS_FILE, which overrides both

    Example secrets.yaml:
    ```yaml
    environment:
      OLLAMA_BASE_URL: "http://gpu-box.local:11434"
      OLLAMA_MODEL: "qwq"
    ```
    """

    def __init__(self, dotenv_path: Optional[str] = None):
        dotenv_path = dotenv_path or path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._apply_secrets_file()
        self._load_settings()

    def _env_number(self, env_var: str, default: N, min_val: N, cast: Callable[[str], N]) -> N:
        """Parse a numeric environment variable, falling back to `default` when invalid."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _load_settings(self):
        self.USER_AGENT = environ.get("USER_AGENT", "BlogRelevanceAnalyzer/0.1 (+https://github.com/)")

        # Feed fetching
        self.FEED_HTTP_TIMEOUT = self._env_number("FEED_HTTP_TIMEOUT", 10.0, 0.1, float)
        self.FEED_MAX_RETRIES = self._env_number("FEED_MAX_RETRIES", 1, 0, int)
        self.FEED_RETRY_DELAY_BASE = self._env_number("FEED_RETRY_DELAY_BASE", 1.0, 0.0, float)

        # Ollama classification service
        self.OLLAMA_BASE_URL = (environ.get("OLLAMA_BASE_URL") or "http://127.0.0.1:11434").strip().rstrip("/")
        self.OLLAMA_MODEL = (environ.get("OLLAMA_MODEL") or "llama3.1").strip()
        self.CLASSIFIER_HTTP_TIMEOUT = self._env_number("CLASSIFIER_HTTP_TIMEOUT", 60.0, 0.1, float)
        self.CLASSIFIER_MAX_RETRIES = self._env_number("CLASSIFIER_MAX_RETRIES", 2, 0, int)
        self.CLASSIFIER_RETRY_DELAY_BASE = self._env_number("CLASSIFIER_RETRY_DELAY_BASE", 0.5, 0.0, float)
        self.CLASSIFIER_MAX_INPUT_CHARS = self._env_number("CLASSIFIER_MAX_INPUT_CHARS", 4000, 200, int)

        # Pipeline defaults
        self.DEFAULT_PARALLEL = self._env_number("DEFAULT_PARALLEL", 3, 1, int)
        self.DEFAULT_MONTH_WINDOW = self._env_number("DEFAULT_MONTH_WINDOW", 3, 1, int)

        # File locations
        self.DATA_PATH = environ.get("DATA_PATH", path.dirname(path.abspath(__file__)))
        self.BLOGS_PATH = environ.get("BLOGS_PATH", path.join(self.DATA_PATH, "blogs.json"))
        self.BLOGS_URL = environ.get(
            "BLOGS_URL",
            "https://raw.githubusercontent.com/daveverwer/iOSDevDirectory/refs/heads/main/blogs.json",
        )
        self.FILTER_CONFIG_PATH = environ.get("FILTER_CONFIG_PATH", path.join(self.DATA_PATH, "filter-config.yaml"))

    def _apply_secrets_file(self):
        """Copy variables from the SECRETS_FILE mapping into the environment.

        Both a top-level mapping and one nested under ``environment`` are accepted.
        A missing or unreadable secrets file is logged and ignored.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        try:
            secrets = _read_yaml(secrets_file_path, 'secrets', MAX_SECRETS_FILE_SIZE)
        except ValueError as e:
            logger.error(str(e))
            return
        if secrets is None:
            logger.warning(f"Secrets file not found or empty at {secrets_file_path}")
            return
        if not isinstance(secrets, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets['environment'] if isinstance(secrets.get('environment'), dict) else secrets
        loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                loaded += 1
            else:
                logger.warning(f"Skipping invalid entry in secrets file: {key}")
        logger.info(f"Loaded {loaded} environment variables from secrets file {secrets_file_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "ollama_base_url": self.OLLAMA_BASE_URL,
            "ollama_model": self.OLLAMA_MODEL,
            "classifier_http_timeout": self.CLASSIFIER_HTTP_TIMEOUT,
            "classifier_max_retries": self.CLASSIFIER_MAX_RETRIES,
            "feed_http_timeout": self.FEED_HTTP_TIMEOUT,
            "feed_max_retries": self.FEED_MAX_RETRIES,
            "default_parallel": self.DEFAULT_PARALLEL,
            "default_month_window": self.DEFAULT_MONTH_WINDOW,
            "blogs_path": self.BLOGS_PATH,
            "filter_config_path": self.FILTER_CONFIG_PATH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


def _normalize_string_list(values: Any) -> List[str]:
    """Trim, lowercase and de-duplicate a list of strings, dropping anything else."""
    if not isinstance(values, list):
        return []
    seen = set()
    normalized: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        lowered = value.strip().lower()
        if not lowered or lowered in seen:
            continue
        seen.add(lowered)
        normalized.append(lowered)
    return normalized


def load_filter_config(config_path: Optional[str] = None) -> FilterConfig:
    """Load the language/category filter applied to the blog directory.

    The file is YAML (plain JSON is accepted as well). Keys may be written as
    ``allowed_languages``/``allowed_categories`` or in camelCase. A missing or
    empty file yields the defaults (English, every category); an unreadable or
    malformed file raises ``ValueError``.
    """
    config_path = config_path or config.FILTER_CONFIG_PATH
    raw = _read_yaml(config_path, 'filter config')
    if raw is None:
        logger.debug(f"No filter config at {config_path}; using defaults")
        return FilterConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"Unable to read filter config at {config_path}: expected a mapping")

    languages = _normalize_string_list(raw.get('allowed_languages', raw.get('allowedLanguages')))
    categories = _normalize_string_list(raw.get('allowed_categories', raw.get('allowedCategories')))

    return FilterConfig(
        allowed_languages=languages or list(DEFAULT_LANGUAGES),
        allowed_categories=categories or None,
    )


# Global configuration instance
config = Config()
