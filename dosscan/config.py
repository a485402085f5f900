"""Configuration management for dosscan."""

from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """dosscan configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DOSSCAN_",
        case_sensitive=False,
    )

    # Compiler (external parser collaborator)
    solc_version: str = "0.8.26"
    solc_auto_install: bool = True
    solc_install_retries: int = 3

    # Call classification
    transfer_stipend: int = 2300
    trusted_addresses: List[str] = []

    # Analysis
    max_workers: int = 4
    max_source_bytes: int = 1048576  # 1MB

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"


settings = Settings()
