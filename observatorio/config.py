"""
Configuration for Observatório
==============================

Environment variables:
- ENVIRONMENT: local|hosted (default: local) - selects the case store once at startup
- API_BASE_URL: Base URL of the hosted functions (default: http://localhost:8888)
- STORE_BACKEND: memory|sql|redis (default: sql) - where local state is persisted
- DATABASE_URL: SQLAlchemy URL for the sql backend (default: sqlite:///./observatorio.db)
- REDIS_URL: Redis URL for the redis backend
- JWT_SECRET_KEY: Secret for bearer tokens sent to the hosted functions
- AUTH0_DOMAIN / AUTH0_CLIENT_ID: Public identity-provider parameters
- DEMO_EMAILS: JSON list of accounts that run in demo (read-only) mode
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

from .schemas import Environment, StoreBackend


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Deployment
    environment: Environment = Environment.LOCAL
    api_base_url: str = "http://localhost:8888"
    remote_timeout_seconds: float = 10.0

    # Local persistence
    store_backend: StoreBackend = StoreBackend.SQL
    database_url: str = "sqlite:///./observatorio.db"
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "observatorio:"

    # Session
    session_timeout_hours: int = 24
    session_check_interval_seconds: int = 300
    login_latency_seconds: float = 0.8

    # Case cache / search
    cache_ttl_seconds: int = 300
    search_debounce_seconds: float = 0.3

    # Bearer tokens for the hosted functions
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60

    # Identity provider (public parameters only)
    auth0_domain: str = "dev-cvjwhtcjyx8zmows.us.auth0.com"
    auth0_client_id: Optional[str] = None
    auth0_audience: Optional[str] = None
    auth0_redirect_uri: str = "http://localhost:8888/pages/callback.html"
    auth0_scope: str = "openid profile email"

    # Accounts
    root_email: Optional[str] = None
    demo_emails: List[str] = []

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_deployment(self) -> List[str]:
        """Validate deployment configuration, return list of warnings"""
        warnings = []

        if self.environment == Environment.HOSTED:
            if not self.api_base_url:
                warnings.append("ENVIRONMENT=hosted but API_BASE_URL not set")
            if not self.auth0_client_id:
                warnings.append("ENVIRONMENT=hosted but AUTH0_CLIENT_ID not set")

        if self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("JWT_SECRET_KEY is the development default")

        if self.store_backend == StoreBackend.MEMORY:
            warnings.append("STORE_BACKEND=memory: local state is lost on restart")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
