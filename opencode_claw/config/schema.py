"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

RejectionBehavior = Literal["ignore", "reject"]


class OpencodeConfig(BaseModel):
    """Connection to the OpenCode agent server."""
    base_url: str = "http://127.0.0.1:4096"
    directory: str | None = None  # Project directory passed to every request
    spawn: bool = False  # Start `opencode serve` ourselves
    hostname: str = "127.0.0.1"
    port: int = Field(default=4096, ge=1, le=65535)
    startup_timeout_s: float = Field(default=30.0, gt=0)
    request_timeout_s: float = Field(default=30.0, gt=0)


class TelegramConfig(BaseModel):
    """Telegram channel configuration."""
    enabled: bool = False
    token: str = ""  # Bot token from @BotFather
    allow_from: list[str] | None = None  # None allows everyone, [] allows no one
    rejection_behavior: RejectionBehavior = "ignore"
    proxy: str | None = None  # HTTP/SOCKS5 proxy URL
    thread_sessions: bool = True  # One session per forum topic


class WhatsAppConfig(BaseModel):
    """WhatsApp channel configuration."""
    enabled: bool = False
    bridge_url: str = "ws://127.0.0.1:3001"
    bridge_auth_token: str = ""
    allow_from: list[str] | None = None  # Phone numbers or LIDs
    rejection_behavior: RejectionBehavior = "ignore"
    thread_sessions: bool = False
    reconnect_delay_s: float = Field(default=5.0, gt=0)


class ChannelsConfig(BaseModel):
    """Configuration for chat channels."""
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)


class SessionsConfig(BaseModel):
    """Session binding persistence."""
    persist_path: str = "~/.opencode-claw/sessions.json"
    title_template: str = "{channel}:{peer_id}"


class ProgressConfig(BaseModel):
    enabled: bool = True
    tool_throttle_ms: int = Field(default=5000, ge=0)
    heartbeat_ms: int = Field(default=60000, ge=0)


class RouterConfig(BaseModel):
    """Turn routing configuration."""
    timeout_ms: int = Field(default=300_000, ge=1000)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)


class OutboxConfig(BaseModel):
    """File-backed delivery queue."""
    directory: str = "~/.opencode-claw/outbox"
    poll_interval_ms: int = Field(default=500, ge=100)
    max_attempts: int = Field(default=3, ge=1)


class CronReportTarget(BaseModel):
    channel: Literal["telegram", "whatsapp"]
    peer_id: str
    thread_id: str | None = None


class CronJobConfig(BaseModel):
    """A scheduled prompt."""
    id: str
    schedule: str  # Standard 5-field cron expression
    prompt: str
    description: str = ""
    report_to: CronReportTarget | None = None
    enabled: bool = True
    timeout_ms: int | None = Field(default=None, ge=1000)

    @field_validator("id", "schedule", "prompt")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class CronConfig(BaseModel):
    enabled: bool = False
    default_timeout_ms: int = Field(default=300_000, ge=1000)
    jobs: list[CronJobConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_job_ids(self) -> "CronConfig":
        seen: set[str] = set()
        for job in self.jobs:
            if job.id in seen:
                raise ValueError(f"duplicate cron job id: {job.id}")
            seen.add(job.id)
        return self


class LogConfig(BaseModel):
    level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str | None = None

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "WARN":
                return "WARNING"
            if normalized:
                return normalized
        return "INFO"


class HealthConfig(BaseModel):
    """Health HTTP server."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=9090, ge=1, le=65535)


class Config(BaseSettings):
    """Root configuration for opencode-claw."""
    opencode: OpencodeConfig = Field(default_factory=OpencodeConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    def channel_config(self, name: str) -> TelegramConfig | WhatsAppConfig | None:
        return getattr(self.channels, name, None)

    class Config:
        env_prefix = "OPENCODE_CLAW_"
        env_nested_delimiter = "__"
