"""
Application Settings.

Centralizes every pipeline threshold via .env / environment variables.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    # --- App ---
    env: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # --- Session Store ---
    database_url: str = "sqlite:///ekyc_sessions.db"
    max_sessions: int = 10
    session_timeout_seconds: float = 30 * 60
    storage_quota_bytes: int = 50 * 1024 * 1024
    compress_images: bool = True

    # --- Quality Gate ---
    quality_min_score: int = 70
    doc_min_width: int = 800
    doc_min_height: int = 600
    doc_brightness_min: float = 30.0
    doc_brightness_max: float = 220.0
    doc_min_contrast: float = 50.0
    blur_min: float = 0.2               # normalized Laplacian variance (var / 500)
    face_brightness_min: float = 50.0
    face_brightness_max: float = 200.0
    face_min_contrast: float = 50.0
    face_min_ratio: float = 0.15
    face_max_ratio: float = 0.8
    face_min_detection_confidence: float = 0.7
    face_max_center_offset: float = 0.2

    # --- OCR / Extraction ---
    ocr_languages: list[str] = ["vi", "en"]
    ocr_use_gpu: bool = False
    ocr_models_dir: str | None = "models/easyocr"

    # --- Validation ---
    min_ocr_confidence: float = 0.5

    # --- Liveness ---
    challenge_duration_seconds: float = 3.0
    capture_timeout_seconds: float = 10.0
    liveness_min_face_ratio: float = 0.15
    liveness_max_face_ratio: float = 0.8
    liveness_min_confidence: float = 0.7
    liveness_pass_ratio: float = 0.6

    # --- Face Matching ---
    face_match_threshold: float = 0.6
    face_min_confidence: float = 0.5
    face_fallback_similarity: float = 0.85
    accept_degraded_match: bool = False
    face_models_dir: str = "models/face"
    face_detector_model: str = "face_detection_yunet_2023mar.onnx"
    face_recognizer_model: str = "face_recognition_sface_2021dec.onnx"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "EKYC_", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Settings singleton."""
    return Settings()
