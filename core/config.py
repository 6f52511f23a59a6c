import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = ENVIRONMENT == "development"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Application settings
APP_NAME = "Conversations API"
APP_VERSION = "1.0.0"

# Database settings
DATABASE_URL = os.getenv("DATABASE_URL")
TESTING = os.getenv("TESTING", "false").lower() == "true"

# Descope settings
DESCOPE_PROJECT_ID = os.getenv("DESCOPE_PROJECT_ID", "")
DESCOPE_JWT_LEEWAY = int(os.getenv("DESCOPE_JWT_LEEWAY", "60"))  # seconds of clock-skew tolerance

# Redis settings
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Pusher Settings
PUSHER_ENABLED = os.getenv("PUSHER_ENABLED", "true").lower() == "true"
PUSHER_APP_ID = os.getenv("PUSHER_APP_ID", "")
PUSHER_KEY = os.getenv("PUSHER_KEY", "")
PUSHER_SECRET = os.getenv("PUSHER_SECRET", "")
PUSHER_CLUSTER = os.getenv("PUSHER_CLUSTER", "us2")

# Fan-out Settings
FANOUT_QUEUE_ENABLED = os.getenv("FANOUT_QUEUE_ENABLED", "false").lower() == "true"
FANOUT_QUEUE_NAME = os.getenv("FANOUT_QUEUE_NAME", "conversation_events")

# Groups Settings
GROUP_MAX_PARTICIPANTS = int(os.getenv("GROUP_MAX_PARTICIPANTS", "100"))
GROUP_NAME_MAX_LENGTH = int(os.getenv("GROUP_NAME_MAX_LENGTH", "100"))
# 'admin' = only the group admin adds members, 'participant' = any member may add
GROUP_ADD_POLICY = os.getenv("GROUP_ADD_POLICY", "admin").lower()

# Message Settings
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "4000"))
MESSAGE_RATE_LIMIT_PER_MINUTE = int(os.getenv("MESSAGE_RATE_LIMIT_PER_MINUTE", "60"))
MESSAGE_PAGE_MAX = int(os.getenv("MESSAGE_PAGE_MAX", "100"))
FORWARDED_PREVIEW_TEMPLATE = os.getenv(
    "FORWARDED_PREVIEW_TEMPLATE", "[Forwarded from {sender}] {content}"
)

# Strip HTML/control characters from message text and group names
MESSAGE_SANITIZE_ENABLED = os.getenv("MESSAGE_SANITIZE_ENABLED", "true").lower() == "true"
