"""
Configuration management for the scene generation pipeline
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # API Keys
    REPLICATE_API_KEY: str = os.getenv("REPLICATE_API_KEY", "")
    REPLICATE_API_TOKEN: str = os.getenv("REPLICATE_API_TOKEN", "")  # Alternative naming

    # Replicate Configuration
    REPLICATE_MAX_RETRIES: int = int(os.getenv("REPLICATE_MAX_RETRIES", "3"))
    REPLICATE_TIMEOUT: int = int(os.getenv("REPLICATE_TIMEOUT", "600"))

    # Generation models
    IMAGE_MODEL: str = os.getenv("IMAGE_MODEL", "black-forest-labs/flux-1.1-pro")
    VIDEO_MODEL: str = os.getenv("VIDEO_MODEL", "minimax/hailuo-2.3")
    STORYBOARD_MODEL: str = os.getenv("STORYBOARD_MODEL", "anthropic/claude-4-sonnet")

    # Polling (seconds)
    IMAGE_POLL_INTERVAL: float = float(os.getenv("IMAGE_POLL_INTERVAL", "2.0"))
    IMAGE_POLL_TIMEOUT: float = float(os.getenv("IMAGE_POLL_TIMEOUT", "300"))
    VIDEO_POLL_INTERVAL: float = float(os.getenv("VIDEO_POLL_INTERVAL", "5.0"))
    VIDEO_POLL_TIMEOUT: float = float(os.getenv("VIDEO_POLL_TIMEOUT", "600"))

    # Retry policy around a single generation + poll call
    # 2 retries = 3 attempts total
    GENERATION_MAX_RETRIES: int = int(os.getenv("GENERATION_MAX_RETRIES", "2"))
    GENERATION_RETRY_DELAY: float = float(os.getenv("GENERATION_RETRY_DELAY", "1.0"))

    # Candidates requested per "generate images" action
    IMAGE_CANDIDATES: int = int(os.getenv("IMAGE_CANDIDATES", "3"))
    MAX_IMAGE_CANDIDATES: int = int(os.getenv("MAX_IMAGE_CANDIDATES", "5"))

    # Seed frames (extracted from the tail of an approved clip)
    SEED_FRAME_COUNT: int = int(os.getenv("SEED_FRAME_COUNT", "5"))
    SEED_FRAME_WINDOW: float = float(os.getenv("SEED_FRAME_WINDOW", "0.5"))

    # Timeline preview
    PREVIEW_DEBOUNCE_SECONDS: float = float(os.getenv("PREVIEW_DEBOUNCE_SECONDS", "0.5"))
    PREVIEW_HEIGHT: int = int(os.getenv("PREVIEW_HEIGHT", "360"))

    # Local working directory for downloaded and rendered media
    OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "/tmp/projects")

    # AWS S3 Configuration
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    PRESIGNED_URL_EXPIRY: int = int(os.getenv("PRESIGNED_URL_EXPIRY", "3600"))  # 1 hour in seconds

    # FFmpeg Configuration (used by moviepy)
    FFMPEG_PATH: Optional[str] = os.getenv("FFMPEG_PATH", None)  # Optional path to ffmpeg executable

    @property
    def replicate_token(self) -> str:
        """Token under either supported env var name."""
        return self.REPLICATE_API_TOKEN or self.REPLICATE_API_KEY


# Global settings instance
settings = Settings()
