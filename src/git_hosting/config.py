"""Configuration management for the git hosting facade."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Type

import toml
from pydantic import AliasChoices, Field, SecretStr, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SECRETS_PATH = Path(".git_hosting/secrets.toml")

MAX_TOKEN_LENGTH = 1000

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass
class SecurityConfig:
    """Security-related configuration."""
    mask_secrets_in_logs: bool = True
    max_token_length: int = MAX_TOKEN_LENGTH
    require_https: bool = True


class TomlSecretsSource(PydanticBaseSettingsSource):
    """Settings source reading secrets from a TOML file.

    Nested tables are flattened, so ``[github] token = "..."`` becomes
    ``github_token``. Keys that do not name a settings field are dropped.
    """

    def __init__(self, settings_cls: Type[BaseSettings], secrets_path: Optional[Path] = None):
        super().__init__(settings_cls)
        self.secrets_path = secrets_path or DEFAULT_SECRETS_PATH

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        # Values are produced in bulk by __call__
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        """Load secrets from the TOML file."""
        if not self.secrets_path.exists():
            return {}

        try:
            with open(self.secrets_path, 'r', encoding='utf-8') as f:
                secrets = toml.load(f)
        except (OSError, toml.TomlDecodeError) as e:
            # A malformed secrets file must not prevent startup
            logger.warning(f"Could not load secrets from {self.secrets_path}: {e}")
            return {}

        flattened = {}
        for key, value in secrets.items():
            if isinstance(value, dict):
                for nested_key, nested_value in value.items():
                    flattened[f"{key}_{nested_key}"] = nested_value
            else:
                flattened[key] = value

        known = self._known_keys()
        return {key: value for key, value in flattened.items() if key in known}

    def _known_keys(self) -> Set[str]:
        keys = set()
        for name, field in self.settings_cls.model_fields.items():
            keys.add(name)
            if isinstance(field.validation_alias, AliasChoices):
                keys.update(choice for choice in field.validation_alias.choices if isinstance(choice, str))
            elif isinstance(field.validation_alias, str):
                keys.add(field.validation_alias)
        return keys


class Settings(BaseSettings):
    """Facade settings with environment variable and secrets file support."""

    # Bearer token, read from GITHUB_TOKEN or TOKEN
    github_token: Optional[SecretStr] = Field(
        default=None, validation_alias=AliasChoices("github_token", "token")
    )

    # Endpoints
    base_url: str = "https://github.com"
    api_url: Optional[str] = None
    graphql_url: Optional[str] = None

    # Client behaviour
    request_timeout_seconds: Optional[float] = None
    per_page: int = 100
    max_concurrent_requests: int = 4
    default_branch: str = "main"

    security: SecurityConfig = Field(default_factory=SecurityConfig)

    # Environment settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            TomlSecretsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @field_validator('github_token', mode='before')
    @classmethod
    def validate_secret_length(cls, v):
        """Validate that the token is not too long (security measure)."""
        if v and len(str(v)) > MAX_TOKEN_LENGTH:
            raise ValueError('Secret token is too long')
        return v

    @field_validator('base_url', 'api_url', 'graphql_url')
    @classmethod
    def validate_url(cls, v):
        """Validate endpoint URLs carry an HTTP scheme."""
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v

    @field_validator('per_page')
    @classmethod
    def validate_per_page(cls, v):
        """Validate page size is accepted by the API."""
        if not 1 <= v <= 100:
            raise ValueError('per_page must be between 1 and 100')
        return v

    @field_validator('max_concurrent_requests')
    @classmethod
    def validate_max_concurrent_requests(cls, v):
        if v < 1:
            raise ValueError('max_concurrent_requests must be at least 1')
        return v

    @field_validator('request_timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError('request_timeout_seconds must be positive')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


def validate_configuration(settings: Settings) -> List[str]:
    """Validate the configuration and return list of validation errors."""
    errors = []

    # Calls still work without a token, but only against public data
    if not settings.github_token:
        errors.append("GitHub token is not configured; requests will be unauthenticated")
    elif len(settings.github_token.get_secret_value()) > settings.security.max_token_length:
        errors.append(f"GitHub token exceeds {settings.security.max_token_length} characters")

    if settings.security.require_https:
        for name in ('base_url', 'api_url', 'graphql_url'):
            value = getattr(settings, name)
            if value and not value.startswith('https://'):
                errors.append(f"{name} must use HTTPS: {value}")

    return errors


def get_masked_config(settings: Settings) -> Dict[str, Any]:
    """Get configuration with sensitive values masked for logging/display."""
    config_dict = settings.model_dump()

    if config_dict.get('github_token') is not None:
        if settings.security.mask_secrets_in_logs:
            config_dict['github_token'] = "***MASKED***"
        else:
            config_dict['github_token'] = settings.github_token.get_secret_value()

    return config_dict


def load_settings() -> Settings:
    """Load and validate settings with proper error handling."""
    try:
        settings = Settings()
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e}")
        # In development, continue with default settings
        return Settings.model_construct()

    validation_errors = validate_configuration(settings)
    if validation_errors and settings.environment == "production":
        raise ValueError(f"Configuration validation failed: {', '.join(validation_errors)}")

    for error in validation_errors:
        logger.warning(error)

    return settings


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings."""
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_github_config(settings: Settings) -> Tuple[Optional[str], str]:
    """Get GitHub configuration (token, base_url)."""
    token = settings.github_token.get_secret_value() if settings.github_token else None
    return token, settings.base_url
