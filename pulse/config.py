"""Pulse configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so ANTHROPIC_API_KEY and mailbox passwords are available
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


class GeneralSettings(BaseSettings):
    db_url: str = Field(default="postgresql+asyncpg://localhost/pulse")
    data_dir: Path = Field(default=Path("data"))
    log_level: str = "INFO"


class AnthropicSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANTHROPIC_")
    api_key: str = ""
    model: str = "claude-haiku-4-5-20251001"
    timeout_seconds: float = 30.0
    store_ai_conversations: bool = True


class LocalModelSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOCAL_MODEL_")
    enabled: bool = True
    name: str = "distilbert-base-uncased-finetuned-sst-2-english"
    max_chars: int = 512


class MailboxAccount(BaseModel):
    """A single IMAP account. Password falls back to the mailbox default."""

    address: str
    password: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None


class MailboxSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MAILBOX_")
    host: str = "imap.gmail.com"
    port: int = 993
    default_password: str = ""
    lookback_hours: int = 24
    interval_minutes: int = 5
    timeout_seconds: float = 15.0
    allow_relaxed_tls: bool = True
    accounts: list[MailboxAccount] = Field(default_factory=list)


class WatchSettings(BaseSettings):
    directories: list[Path] = Field(
        default_factory=lambda: [Path("data/calls"), Path("data/excel"), Path("data/xml"), Path("data")]
    )
    extensions: list[str] = Field(default_factory=lambda: [".txt", ".csv", ".xlsx", ".xml"])
    debounce_seconds: float = 2.0
    metric_exports: list[Path] = Field(
        default_factory=lambda: [Path("data/client_metrics.csv"), Path("data/client_retention.csv")]
    )


class SentimentSettings(BaseSettings):
    conversation_batch_size: int = 50
    email_batch_size: int = 20
    remote_max_chars: int = 1000
    key_phrase_count: int = 5


class ClusteringSettings(BaseSettings):
    interval_minutes: int = 30
    min_documents: int = 3
    max_clusters: int = 3
    random_state: Optional[int] = None


class AlertSettings(BaseSettings):
    trigger_interval_minutes: int = 2
    trigger_initial_delay_seconds: float = 5.0
    metrics_interval_minutes: int = 2
    metrics_min_interval_seconds: int = 60
    spam_window_minutes: int = 60
    spam_max_alerts: int = 3
    dedup_window_minutes: int = 60
    notification_sender: str = "csdinsure@gmail.com"


class Settings(BaseSettings):
    """Top-level settings assembled from subsections."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    anthropic: AnthropicSettings = Field(default_factory=AnthropicSettings)
    local_model: LocalModelSettings = Field(default_factory=LocalModelSettings)
    mailbox: MailboxSettings = Field(default_factory=MailboxSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    sentiment: SentimentSettings = Field(default_factory=SentimentSettings)
    clustering: ClusteringSettings = Field(default_factory=ClusteringSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from TOML config file, falling back to defaults."""
        if config_path is None:
            config_path = Path.home() / ".config/pulse/config.toml"

        if config_path.exists():
            import toml

            data = toml.load(config_path)
            return cls(
                general=GeneralSettings(**data.get("general", {})),
                anthropic=AnthropicSettings(**data.get("anthropic", {})),
                local_model=LocalModelSettings(**data.get("local_model", {})),
                mailbox=MailboxSettings(**data.get("mailbox", {})),
                watch=WatchSettings(**data.get("watch", {})),
                sentiment=SentimentSettings(**data.get("sentiment", {})),
                clustering=ClusteringSettings(**data.get("clustering", {})),
                alerts=AlertSettings(**data.get("alerts", {})),
            )

        return cls()


# Module-level singleton
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
