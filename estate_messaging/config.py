"""Configuration loaded from environment variables."""

import os


# Store
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017/?replicaSet=rs0")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "estate")

# Attachments
BLOB_BACKEND = os.getenv("BLOB_BACKEND", "local")
BLOB_UPLOAD_URL = os.getenv("BLOB_UPLOAD_URL", "")
BLOB_UPLOAD_TOKEN = os.getenv("BLOB_UPLOAD_TOKEN", "")
UPLOADS_DIR = os.getenv("UPLOADS_DIR", "./uploads")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(20 * 1024 * 1024)))

# Realtime
RECONCILER_RETRY_SECONDS = float(os.getenv("RECONCILER_RETRY_SECONDS", "2.0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
