import os
from dotenv import load_dotenv

load_dotenv()

# Identity provider
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIREBASE_CERTS_URL = os.getenv(
    "FIREBASE_CERTS_URL",
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com",
)

# Database - explicit URL wins, then MySQL parts, then a local SQLite file
MYSQL_HOST = os.getenv("MYSQL_HOST")
MYSQL_USER = os.getenv("MYSQL_USER")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD", "")
MYSQL_DATABASE = os.getenv("MYSQL_DATABASE")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if MYSQL_HOST and MYSQL_USER and MYSQL_DATABASE:
        return f"mysql+pymysql://{MYSQL_USER}:{MYSQL_PASSWORD}@{MYSQL_HOST}/{MYSQL_DATABASE}"
    return "sqlite:///./tryon.db"


DATABASE_URL = _database_url()

# Try-on API (Segmind IDM-VTON)
SEGMIND_API_KEY = os.getenv("SEGMIND_API_KEY")
SEGMIND_API_URL = os.getenv("SEGMIND_API_URL", "https://api.segmind.com/v1/idm-vton")
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "120"))

# Cloudinary
CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")

# HTTP server
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
PORT = int(os.getenv("PORT", "3001"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
