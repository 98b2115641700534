import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, Field, HttpUrl, ValidationError, field_validator

from .errors import FatalConfigError

DEFAULT_SITEMAPS = [
    "https://www.stark.dk/sitemapbase.xml",
    "https://www.stark.dk/sitemapcategories.xml",
    "https://www.stark.dk/sitemapvariants1.xml",
    "https://www.stark.dk/sitemapvariants2.xml",
]

DEFAULT_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome Safari CatalogCrawler/1.0"


class Settings(BaseModel):
    supabase_url: Optional[HttpUrl] = Field(default=None, alias="SUPABASE_URL")
    supabase_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("SUPABASE_SERVICE_KEY", "SUPABASE_KEY")
    )

    sitemaps: List[str] = Field(default_factory=lambda: list(DEFAULT_SITEMAPS), alias="CRAWLER_SITEMAPS")
    concurrency: int = Field(default=2, ge=1, alias="CRAWLER_CONCURRENCY")
    batch_size: int = Field(default=10, ge=1, alias="CRAWLER_BATCH_SIZE")
    timeout_ms: int = Field(default=60000, ge=1, alias="CRAWLER_TIMEOUT")
    ready_timeout_ms: int = Field(default=5000, ge=0, alias="CRAWLER_READY_TIMEOUT")
    max_retries: int = Field(default=1, ge=0, alias="CRAWLER_MAX_RETRIES")
    retry_delay_ms: int = Field(default=1000, ge=0, alias="CRAWLER_RETRY_DELAY")
    batch_pause_ms: int = Field(default=2000, ge=0, alias="CRAWLER_DELAY")
    max_consecutive_failures: int = Field(default=20, ge=1, alias="CRAWLER_MAX_CONSECUTIVE_FAILURES")
    progress_every: int = Field(default=25, ge=1, alias="CRAWLER_PROGRESS_EVERY")
    headless: bool = Field(default=True, alias="CRAWLER_HEADLESS")
    block_assets: bool = Field(default=True, alias="CRAWLER_BLOCK_ASSETS")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, alias="CRAWLER_USER_AGENT")
    locale: str = Field(default="da-DK", alias="CRAWLER_LOCALE")
    offset: int = Field(default=0, ge=0, alias="CRAWLER_OFFSET")
    limit: Optional[int] = Field(default=None, ge=0, alias="CRAWLER_LIMIT")

    sitemap_max_retries: int = Field(default=3, ge=1, alias="SITEMAP_MAX_RETRIES")
    sitemap_retry_delay_ms: int = Field(default=1000, ge=0, alias="SITEMAP_RETRY_DELAY")
    sitemap_timeout: float = Field(default=30.0, gt=0, alias="SITEMAP_TIMEOUT")

    default_currency: str = Field(default="DKK", alias="DEFAULT_CURRENCY")
    archive_path: Optional[str] = Field(default=None, alias="CRAWLER_ARCHIVE_PATH")

    products_table: str = Field(default="stark_products", alias="PRODUCTS_TABLE")
    changes_table: str = Field(default="stark_product_changes", alias="CHANGES_TABLE")
    crawl_logs_table: str = Field(default="stark_crawl_logs", alias="CRAWL_LOGS_TABLE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")

    @field_validator("sitemaps", mode="before")
    @classmethod
    def _split_sitemaps(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("supabase_url", "supabase_key", "limit", "archive_path", "log_file", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


def load_env_file():
    # Load from repo root if present, otherwise rely on environment variables.
    root_env = Path(__file__).resolve().parents[1] / ".env"
    if root_env.exists():
        load_dotenv(root_env)
    else:
        load_dotenv()


def load_settings(environ=None, require_store: bool = True) -> Settings:
    """
    Build settings from a mapping of environment variables.

    Raises FatalConfigError naming every missing variable, so the CLI can
    abort before a crawl session is opened. `require_store=False` is used by
    dry runs, which never talk to Supabase.
    """
    environ = os.environ if environ is None else environ
    try:
        settings = Settings(**environ)
    except ValidationError as exc:
        raise FatalConfigError(f"Invalid crawler configuration: {exc}") from exc

    if require_store:
        missing = []
        if settings.supabase_url is None:
            missing.append("SUPABASE_URL")
        if not settings.supabase_key:
            missing.append("SUPABASE_SERVICE_KEY")
        if missing:
            raise FatalConfigError(f"Missing required environment variables: {', '.join(missing)}")

    if require_store and "your-project.supabase.co" in str(settings.supabase_url or ""):
        raise FatalConfigError(
            "SUPABASE_URL in .env is still the placeholder (your-project). "
            "Fill in your real project URL and service key."
        )
    if not settings.sitemaps:
        raise FatalConfigError("CRAWLER_SITEMAPS is empty; at least one sitemap URL is required.")
    return settings
