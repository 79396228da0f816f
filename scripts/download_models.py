"""
Download the model files the pipeline runs with.

  - YuNet face detector + SFace recognizer (opencv_zoo ONNX) → models/face
  - EasyOCR detection/recognition weights for the configured languages → models/easyocr

Usage:
    python scripts/download_models.py [--skip-ocr] [--force]
"""
import argparse
import sys
import urllib.request
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ekyc.config.settings import get_settings
from ekyc.infrastructure.face.opencv_face_engine import SFACE_URL, YUNET_URL

MODELS_DIR = PROJECT_ROOT / "models"


def is_lfs_pointer(path: Path) -> bool:
    return path.read_bytes()[:80].startswith(b"version https://git-lfs")


def download_file(url: str, dest_path: Path, force: bool = False) -> bool:
    if dest_path.exists() and not force and not is_lfs_pointer(dest_path):
        print(f"Already present: {dest_path}")
        return True
    print(f"Downloading {url}...")
    try:
        urllib.request.urlretrieve(url, dest_path)
    except OSError as e:
        print(f"Error downloading {url}: {e}")
        return False
    if is_lfs_pointer(dest_path):
        print(f"Got a Git LFS pointer instead of the model: {dest_path}")
        dest_path.unlink()
        return False
    print(f"Saved to {dest_path} ({dest_path.stat().st_size // 1024} KB)")
    return True


def setup_face_models(force: bool = False) -> bool:
    print("\n--- Setting up YuNet / SFace models ---")
    settings = get_settings()
    face_dir = Path(settings.face_models_dir)
    if not face_dir.is_absolute():
        face_dir = PROJECT_ROOT / face_dir
    face_dir.mkdir(parents=True, exist_ok=True)

    ok = download_file(YUNET_URL, face_dir / settings.face_detector_model, force)
    ok = download_file(SFACE_URL, face_dir / settings.face_recognizer_model, force) and ok
    return ok


def setup_easyocr() -> bool:
    print("\n--- Setting up EasyOCR models ---")
    settings = get_settings()
    languages = settings.ocr_languages
    easyocr_dir = Path(settings.ocr_models_dir or "models/easyocr")
    if not easyocr_dir.is_absolute():
        easyocr_dir = PROJECT_ROOT / easyocr_dir
    easyocr_dir.mkdir(parents=True, exist_ok=True)
    try:
        import easyocr
        print(f"Downloading EasyOCR {languages} models to {easyocr_dir}...")
        easyocr.Reader(languages, gpu=False, download_enabled=True,
                       model_storage_directory=str(easyocr_dir), verbose=True)
        print("EasyOCR models ready.")
        return True
    except ImportError:
        print("easyocr not installed, run pip install easyocr")
    except Exception as e:
        print(f"Failed to setup EasyOCR: {e}")
    return False


def main():
    parser = argparse.ArgumentParser(description="Download face and OCR models")
    parser.add_argument("--skip-ocr", action="store_true", help="Only fetch the face models")
    parser.add_argument("--force", action="store_true", help="Re-download existing files")
    args = parser.parse_args()

    MODELS_DIR.mkdir(exist_ok=True)
    ok = setup_face_models(args.force)
    if not args.skip_ocr:
        ok = setup_easyocr() and ok
    print("\nAll models ready." if ok else "\nSome models are missing; face checks will run degraded.")
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
