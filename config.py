import os

# App Defaults - Image backend (OpenAI compatible)
IMAGE_API_BASE = os.getenv("IMAGE_API_BASE", "https://api.openai.com/v1")
IMAGE_API_KEY = os.getenv("IMAGE_API_KEY") or os.getenv("OPENAI_API_KEY", "")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gpt-image-1")
IMAGE_EDIT_MODEL = os.getenv("IMAGE_EDIT_MODEL", "gpt-image-1")
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o-mini")
IMAGE_SIZE = "1024x1024"

# Describe every reference image before an edit and fold it into the prompt
ANALYZE_REFERENCES = os.getenv("ANALYZE_REFERENCES", "true").lower() in ("1", "true", "yes")
SUPPORTED_MIME_TYPES = [
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/heic",
    "image/heif",
]

# Graph engine
RESULT_OFFSET_X = 400.0  # Result nodes spawn this far right of their source
PROCESSOR_MAX_RETRIES = 1

# Server
API_HOST = "0.0.0.0"
API_PORT = 8000
LOG_BUFFER_SIZE = 100
