"""
Central configuration for the Clinic Scribe Service
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ModelName(str, Enum):
    DEEPSEEK_CHAT = "deepseek-chat"
    GPT_4_1_NANO = "gpt-4.1-nano"
    GPT_4O_MINI = "gpt-4o-mini"


class Settings(BaseSettings):
    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Clinic Scribe API")
    api_description: str = Field(default="Session capture, transcription and clinical documentation service")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001)

    # External Service APIs
    openai_api_key: str = Field(default="")
    llm_base_url: str = Field(default="https://api.deepseek.com")
    assemblyai_api_key: str = Field(default="")
    assemblyai_api_base_url: str = Field(default="https://api.assemblyai.com")

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_requests: int = Field(default=10)
    rate_limit_window: int = Field(default=60)  # seconds

    # Usage quota
    monthly_quota_minutes: float = Field(default=120.0)
    bytes_per_estimated_minute: int = Field(default=1024 * 1024)
    reservation_max_attempts: int = Field(default=5)

    # Drafts
    draft_max_age_hours: int = Field(default=24)
    draft_content_type: str = Field(default="audio/webm")
    continuation_content_type: str = Field(default="audio/mpeg")
    supported_audio_formats: List[str] = Field(
        default=["audio/mpeg", "audio/mp3", "audio/wav", "audio/mp4", "audio/m4a", "audio/ogg", "audio/webm"]
    )

    # Blob storage
    blob_root: str = Field(default="./data/blobs")
    blob_public_url: str = Field(default="http://localhost:3001/blobs")
    max_media_size_mb: int = Field(default=50)

    # Timeouts
    stt_timeout: int = Field(default=120)
    llm_timeout: int = Field(default=60)

    # Language hints accepted by the speech-to-text provider ("auto" = detect)
    supported_languages: List[str] = Field(
        default=["auto", "en", "msa", "tam", "cmn", "hin", "yue", "jpn", "kor"]
    )

    # LLM Configuration
    llm_temperature: float = Field(default=0.0)
    llm_max_tokens: int = Field(default=2000)
    default_llm_model: str = Field(default=ModelName.DEEPSEEK_CHAT.value)
    default_clinic_prompt: str = Field(
        default=(
            "You are an experienced general practitioner. Based on the consultation "
            "transcript, suggest the most likely diagnosis and an appropriate prescription."
        )
    )
    default_summary_prompt: str = Field(
        default=(
            "Summarise the patient's presenting complaint and relevant medical history "
            "from the consultation transcript in concise clinical language."
        )
    )

    # CORS Configuration
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:8080"])
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default=["GET", "POST", "PUT", "PATCH", "DELETE"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Monitoring
    enable_metrics: bool = Field(default=True)
    metrics_path: str = Field(default="/metrics")

    # Audit Logging
    audit_log_enabled: bool = Field(default=True)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
