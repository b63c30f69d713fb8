"""
Shared constants for the outbound access layer.
"""

# Default per-attempt timeouts in seconds, keyed by circuit/service name
DEFAULT_TIMEOUTS = {
    "google-ads": 30.0,
    "meta-ads": 30.0,
    "tiktok-ads": 30.0,
    "snap-ads": 30.0,
    "linkedin-ads": 30.0,
    "ga4": 30.0,
    "bigquery": 60.0,
    "default": 30.0,
}

# Retry defaults for the resilient HTTP client
DEFAULT_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0  # seconds, multiplied by (attempt + 1)

# Circuit breaker defaults
CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_RESET_TIMEOUT = 30.0  # seconds
CIRCUIT_HALF_OPEN_MAX_CALLS = 1

# Rate limiter
RATE_LIMIT_SWEEP_INTERVAL = 60.0  # seconds
UNKNOWN_CLIENT = "unknown"

# OAuth token endpoints
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
META_TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"
LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
TIKTOK_TOKEN_URL = "https://business-api.tiktok.com/open_api/v1.3/oauth2/refresh_token/"
SNAPCHAT_TOKEN_URL = "https://accounts.snapchat.com/login/oauth2/access_token"

# Token lifecycle
TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60
META_LONG_LIVED_TOKEN_SECONDS = 60 * 24 * 60 * 60  # ~60 days

# Signed OAuth state
SIGNED_STATE_TTL_MS = 10 * 60 * 1000

# Secret requirements
TOKEN_KEY_BYTES = 32
MIN_STATE_SECRET_LENGTH = 32
