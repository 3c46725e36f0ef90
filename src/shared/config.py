from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "gmpki"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "WARNING"

    # Hierarchy shape (command line flags override these)
    PKI_ORGS: int = 2
    PKI_CHILD_ORGS: int = 2
    PKI_SERVERS: int = 2
    PKI_CLIENTS: int = 1
    PKI_NESTING_DEPTH: int = 1
    PKI_BASE_NAME: str = "Org"

    # Output
    PKI_OUTPUT_DIR: str = "."

    # Telemetry exporters write to stdout; off by default for a command line tool
    OTEL_CONSOLE_EXPORT: bool = False


settings = Settings()
