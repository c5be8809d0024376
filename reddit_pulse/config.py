"""Pipeline configuration.

All settings come from the process environment, optionally primed from a
``.env`` file. Required settings are validated up front so a run fails before
any external call is made, naming every missing key at once.
"""

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

import structlog

from reddit_pulse.backend.utils.errors import ConfigurationError

logger = structlog.get_logger()

_TRUE_VALUES = {"1", "true", "yes", "on"}

# (env var, field name, default)
_INT_SETTINGS = (
    ("POST_LIMIT", "post_limit", 100),
    ("MAX_COMMENT_DEPTH", "max_comment_depth", 2),
    ("MAX_COMMENTS_PER_LEVEL", "max_comments_per_level", 50),
    ("COLLECT_WORKERS", "collect_workers", 4),
    ("ANALYZE_WORKERS", "analyze_workers", 5),
    ("ANALYZE_BATCH_LIMIT", "analyze_batch_limit", 50),
    ("REQUEST_TIMEOUT", "request_timeout", 30),
)


def load_dotenv(path: str = ".env") -> None:
    """Load a .env file into os.environ without overriding set variables."""
    if not os.path.exists(path):
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def _parse_bool(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in _TRUE_VALUES


@dataclass
class PipelineConfig:
    """Everything a pipeline run needs, resolved from the environment.

    The persistence store is a SQLite file, so its connection credential is
    the database path (``DB_PATH``).
    """

    reddit_client_id: Optional[str] = None
    reddit_client_secret: Optional[str] = None
    reddit_refresh_token: Optional[str] = None
    reddit_username: Optional[str] = None
    reddit_password: Optional[str] = None
    reddit_user_agent: str = "reddit-pulse/1.0"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    db_path: Optional[str] = None
    subreddit: str = "whoop"
    extended_analysis: bool = False
    analyze_comments: bool = False
    force_reanalysis: bool = False
    use_search_terms: bool = False
    post_limit: int = 100
    max_comment_depth: int = 2
    max_comments_per_level: int = 50
    collect_workers: int = 4
    analyze_workers: int = 5
    analyze_batch_limit: int = 50
    request_timeout: int = 30
    cron_secret: Optional[str] = None
    invalid_keys: Optional[List[str]] = None

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = ".env",
    ) -> "PipelineConfig":
        """Build a config from environment variables.

        Args:
            environ: Mapping to read instead of os.environ (tests pass a dict).
                When given, no .env file is read.
            dotenv_path: .env file to load into os.environ first. None skips it.

        Returns:
            PipelineConfig. Call validate() before using it.
        """
        if environ is None:
            if dotenv_path:
                load_dotenv(dotenv_path)
            environ = os.environ

        def get(key: str) -> Optional[str]:
            value = environ.get(key)
            if value is None or not value.strip():
                return None
            return value.strip()

        invalid: List[str] = []
        ints = {}
        for env_key, field_name, default in _INT_SETTINGS:
            raw = get(env_key)
            if raw is None:
                ints[field_name] = default
                continue
            try:
                parsed = int(raw)
            except ValueError:
                parsed = 0
            if parsed < 1:
                invalid.append(env_key)
                parsed = default
            ints[field_name] = parsed

        return cls(
            reddit_client_id=get("REDDIT_CLIENT_ID"),
            reddit_client_secret=get("REDDIT_CLIENT_SECRET"),
            reddit_refresh_token=get("REDDIT_REFRESH_TOKEN"),
            reddit_username=get("REDDIT_USERNAME"),
            reddit_password=get("REDDIT_PASSWORD"),
            reddit_user_agent=get("REDDIT_USER_AGENT") or "reddit-pulse/1.0",
            openai_api_key=get("OPENAI_API_KEY"),
            openai_model=get("OPENAI_MODEL") or "gpt-4o-mini",
            db_path=get("DB_PATH"),
            subreddit=get("SUBREDDIT") or "whoop",
            extended_analysis=_parse_bool(get("EXTENDED_ANALYSIS")),
            analyze_comments=_parse_bool(get("ANALYZE_COMMENTS")),
            force_reanalysis=_parse_bool(get("FORCE_REANALYSIS")),
            use_search_terms=_parse_bool(get("USE_SEARCH_TERMS")),
            cron_secret=get("CRON_SECRET"),
            invalid_keys=invalid,
            **ints,
        )

    def missing_keys(self) -> List[str]:
        """Return every required key that is absent or invalid."""
        missing = []
        if not self.reddit_client_id:
            missing.append("REDDIT_CLIENT_ID")
        if not self.reddit_client_secret:
            missing.append("REDDIT_CLIENT_SECRET")
        if not self.reddit_refresh_token and not (self.reddit_username and self.reddit_password):
            missing.append("REDDIT_REFRESH_TOKEN")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.db_path:
            missing.append("DB_PATH")
        missing.extend(self.invalid_keys or [])
        return missing

    def validate(self) -> "PipelineConfig":
        """Raise ConfigurationError naming every missing required key.

        Returns:
            self, so callers can chain ``PipelineConfig.from_env().validate()``.

        Raises:
            ConfigurationError: If any required key is missing or invalid.
        """
        missing = self.missing_keys()
        if missing:
            logger.error("configuration_invalid", missing_keys=missing)
            raise ConfigurationError(missing)
        return self
