import os

SECRET_KEY = os.getenv("FORUM_SECRET_KEY", "your-secret-key-change-this")
DB_PATH = os.getenv("FORUM_DB_PATH", "forum.db")
ALLOWED_ORIGINS = ["http://localhost:3000", "http://localhost:8080"]
ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]
ACCESS_TOKEN_EXPIRE_MINUTES = 30
BCRYPT_ROUNDS = int(os.getenv("FORUM_BCRYPT_ROUNDS", "12"))
LOG_LEVEL = os.getenv("FORUM_LOG_LEVEL", "INFO")

# Server Configuration
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

# Bootstrap administrator, created on startup when no admin exists
DEFAULT_ADMIN_USERNAME = os.getenv("FORUM_ADMIN_USERNAME", "admin")
DEFAULT_ADMIN_EMAIL = os.getenv("FORUM_ADMIN_EMAIL", "admin@forum.local")
DEFAULT_ADMIN_PASSWORD = os.getenv("FORUM_ADMIN_PASSWORD", "ChangeMe-Admin1!")

# Validation Constants
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 100
CATEGORY_NAME_MIN_LENGTH = 2
CATEGORY_NAME_MAX_LENGTH = 50
CATEGORY_DESCRIPTION_MAX_LENGTH = 500
THREAD_TITLE_MIN_LENGTH = 3
THREAD_TITLE_MAX_LENGTH = 100
THREAD_CONTENT_MIN_LENGTH = 10
THREAD_CONTENT_MAX_LENGTH = 10000
POST_CONTENT_MIN_LENGTH = 1
POST_CONTENT_MAX_LENGTH = 5000
BAN_REASON_MAX_LENGTH = 1000
SEARCH_QUERY_MIN_LENGTH = 2
SEARCH_QUERY_MAX_LENGTH = 100

# Pagination
ALLOWED_PAGE_SIZES = (10, 15, 20, 50)
DEFAULT_PAGE_SIZE = 15
SEARCH_SUGGESTION_LIMIT = 3

# Search date ranges
DATE_RANGES = ("week", "month", "year", "all")

# Cache TTL Settings (in seconds)
STATS_CACHE_TTL = 300    # 5 minutes

# Profile and admin activity views
PROFILE_RECENT_LIMIT = 5
ADMIN_ACTIVITY_LIMIT = 10

# Security Settings
MAX_REQUEST_SIZE_MB = 1
GZIP_MIN_SIZE = 1000

# Time Constants (in seconds)
SECONDS_PER_DAY = 86400

# HTTP Status Codes
HTTP_REQUEST_ENTITY_TOO_LARGE = 413
HTTP_NOT_FOUND = 404
HTTP_INTERNAL_SERVER_ERROR = 500
