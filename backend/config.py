"""Application-wide configuration constants."""

import os

# --- Networking ---
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8765"))
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
).split(",")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Storage ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./peerdrop.db")

# --- Presence ---
PRESENCE_STALENESS_WINDOW = float(os.getenv("PRESENCE_STALENESS_WINDOW", "120"))  # seconds

# --- Reconciler ---
RECONCILE_INTERVAL = float(os.getenv("RECONCILE_INTERVAL", "10"))  # seconds
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "200"))
RECONCILE_SHUTDOWN_GRACE = float(os.getenv("RECONCILE_SHUTDOWN_GRACE", "15"))  # seconds

# --- Live channel ---
CHANNEL_CONNECT_TIMEOUT = float(os.getenv("CHANNEL_CONNECT_TIMEOUT", "10"))  # seconds
CHANNEL_SEND_TIMEOUT = float(os.getenv("CHANNEL_SEND_TIMEOUT", "60"))  # seconds
CHUNK_SIZE = 131072  # 128 KB

# --- Blob store (Pinata / IPFS) ---
PINATA_JWT = os.getenv("PINATA_JWT", "")
PINATA_API_URL = os.getenv(
    "PINATA_API_URL", "https://api.pinata.cloud/pinning/pinFileToIPFS"
)
PINATA_GATEWAY_URL = os.getenv("PINATA_GATEWAY_URL", "https://gateway.pinata.cloud")
BLOB_UPLOAD_TIMEOUT = float(os.getenv("BLOB_UPLOAD_TIMEOUT", "120"))  # seconds

# --- Uploads ---
MAX_UPLOAD_SIZE = 100 * 1024 * 1024  # 100 MB
ALLOWED_CONTENT_TYPES = frozenset({
    # Documents
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    # Images
    "image/jpeg",
    "image/png",
    "image/gif",
    # Audio
    "audio/mpeg",
    "audio/wav",
    # Video
    "video/mp4",
    "video/x-matroska",
    # Archives
    "application/zip",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
})
