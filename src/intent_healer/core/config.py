from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    # Healer switches
    HEALER_ENABLED: bool = Field(default=True, description="Global kill switch for healing")
    HEALER_CONFIG_PATH: str = Field(default="healer.yml", description="Path to the YAML healing policy")

    # LLM Configuration
    MODEL_PROVIDER: str = "online"  # "online" for Gemini, "local" for Ollama
    GEMINI_API_KEY: Optional[str] = None
    ONLINE_MODEL: str = "gemini/gemini-2.5-flash"
    LOCAL_MODEL: str = "llama3"
    OLLAMA_BASE_URL: str = Field(default="http://localhost:11434", description="Base URL of the Ollama server")

    # Logging and audit output
    LOG_LEVEL: str = Field(default="INFO", description="Root level for healer loggers")
    LOG_DIR: Optional[str] = Field(default="logs", description="Directory for rotating log files, empty to disable")
    AUDIT_DIR: Optional[str] = Field(default=None, description="Directory for daily audit JSONL files")

    @field_validator('MODEL_PROVIDER')
    @classmethod
    def validate_model_provider(cls, v):
        """Validate that MODEL_PROVIDER is either 'online' or 'local'."""
        if v.lower() not in ['online', 'local']:
            raise ValueError(f"MODEL_PROVIDER must be 'online' or 'local', got '{v}'")
        return v.lower()

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Validate that LOG_LEVEL names a standard logging level."""
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError(f"LOG_LEVEL must be a standard logging level, got '{v}'")
        return v.upper()

    @field_validator('OLLAMA_BASE_URL')
    @classmethod
    def validate_ollama_url(cls, v):
        """Validate that OLLAMA_BASE_URL is an http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"OLLAMA_BASE_URL must start with http:// or https://, got '{v}'")
        return v.rstrip("/")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra='allow'  # Allow extra fields from .env file
    )
