"""Configuration settings for the integration gateway."""

from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Service Configuration
    service_name: str = "integration-gateway"
    port: int = 8005
    environment: str = "development"
    debug: bool = False

    # Security
    encryption_key: str

    # Database
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "integration_gateway"
    redis_url: str = "redis://localhost:6379"

    # OAuth Credentials
    # GitHub
    github_client_id: Optional[str] = None
    github_client_secret: Optional[str] = None
    github_redirect_uri: Optional[str] = None

    # Webhook secrets (service-wide fallback when an integration has none)
    github_webhook_secret: Optional[str] = None
    vercel_webhook_secret: Optional[str] = None
    slack_signing_secret: Optional[str] = None
    slack_bot_user_id: Optional[str] = None
    webhook_dedupe_window: int = 600  # seconds
    # Public base URL providers deliver to, used by the webhook health check
    webhook_base_url: Optional[str] = None

    # Retry policy shared by every client adapter
    retry_max_retries: int = 3
    retry_base_backoff: float = 1.0
    retry_max_backoff: float = 30.0
    retry_jitter: float = 0.5
    http_timeout: float = 30.0

    # Schedulers
    health_probe_interval: int = 300  # 5 minutes
    sync_poll_interval: int = 300  # 5 minutes
    escalation_check_interval: int = 60
    sync_lock_ttl: int = 1800
    rollback_lock_ttl: int = 300

    # Health thresholds
    health_rate_limit_degraded_ratio: float = 0.2
    health_latency_degraded_ms: int = 2000
    health_realert_interval: int = 3600  # 1 hour
    health_outcome_window: int = 50

    # Approval gate
    sla_escalation_threshold: int = 7200  # 2 hours
    risk_magnitude_medium: int = 50
    risk_magnitude_high: int = 500
    risk_magnitude_critical: int = 5000
    task_max_attempts: int = 3
    # Baseline risk per task type, before environment/destructiveness/magnitude rules
    risk_baselines: Dict[str, str] = {
        "code_review": "low",
        "issue_triage": "low",
        "deployment_triage": "medium",
        "chat_reply": "low",
    }
    # Slack channel that receives deployment triage reports
    deployment_alert_channel: Optional[str] = None

    # Event bus
    event_bus_workers: int = 4
    event_bus_max_attempts: int = 3
    event_bus_retry_delay: float = 1.0

    # Reasoning service
    reasoning_service_url: Optional[str] = None
    reasoning_service_api_key: Optional[str] = None
    reasoning_service_timeout: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    def webhook_secret_for(self, service: str) -> Optional[str]:
        """Service-wide webhook secret from the environment."""
        return {
            "github": self.github_webhook_secret,
            "vercel": self.vercel_webhook_secret,
            "slack": self.slack_signing_secret,
        }.get(service)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Integration specific configurations
INTEGRATION_CONFIGS: Dict[str, Dict[str, Any]] = {
    "github": {
        "name": "GitHub",
        "type": "oauth2",
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "api_base_url": "https://api.github.com",
        "scopes": ["repo", "read:org", "admin:repo_hook"],
        "entity_types": ["repositories", "pull_requests"],
        "rate_limit": {
            "calls": 5000,
            "window": 3600,  # 1 hour
        }
    },
    "vercel": {
        "name": "Vercel",
        "type": "token",
        "api_base_url": "https://api.vercel.com",
        "entity_types": ["deployments"],
        "rate_limit": {
            "calls": 500,
            "window": 60,
        }
    },
    "slack": {
        "name": "Slack",
        "type": "token",
        "api_base_url": "https://slack.com/api",
        "entity_types": ["channels"],
        "rate_limit": {
            "calls": 50,
            "window": 60,  # 1 minute
        }
    },
}
