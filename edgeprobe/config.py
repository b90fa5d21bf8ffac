"""Constants and configuration for edgeprobe."""

# Probe budgets (seconds)
DEFAULT_CONNECT_TIMEOUT = 1.0   # TCP dial
DEFAULT_OVERALL_BUDGET = 2.0    # dial start -> full classifying response

# Worker pools
DEFAULT_MAX_CONCURRENCY = 100
DEFAULT_SPEED_WORKERS = 5

# Speed test
DEFAULT_SPEED_TEST_URL = "speed.cloudflare.com/__down?bytes=500000000"
DEFAULT_SPEED_TIMEOUT = 5.0
DEFAULT_MIN_SPEED = 0.0  # MB/s

# Classifying request
DEFAULT_CLASSIFY_HOST = "www.speedtest.net"
TRACE_PATH = "/cdn-cgi/trace"
FACILITY_PATTERN = r"colo=([A-Z]+)"

# The edge echoes the request user agent back as ``uag=<value>``.
USER_AGENT = "Mozilla/5.0"
CLASSIFY_MARKER = f"uag={USER_AGENT}"

# Output
DEFAULT_OUTPUT_FILE = "ip.csv"
DEFAULT_INPUT_PATH = "ip.txt"
DEFAULT_PORT = 443
UNKNOWN_COUNTRY = "UNKNOWN"
UNKNOWN_FLAG = "\U0001f3f3\ufe0f"  # unmapped country code
UNKNOWN_COUNTRY_FLAG = "\U0001f310"  # records without a location

# File descriptor limit requested before a large scan (Linux only)
TARGET_OPEN_FILES = 10000

# Telegram
TELEGRAM_API = "https://api.telegram.org"
TELEGRAM_CONNECT_TIMEOUT = 3.0
TELEGRAM_TIMEOUT = 10.0
NOTIFY_MAX_RETRIES = 3
NOTIFY_BACKOFF_BASE = 1.0  # seconds; doubles per attempt
CHAT_IDS_ENV = "CHAT_IDS"
TELEGRAM_TOKEN_ENV = "TELEGRAM_TOKEN"

# Latency color thresholds (milliseconds)
FAST_THRESHOLD_MS = 100.0
MEDIUM_THRESHOLD_MS = 250.0

# Speed color thresholds (MB/s)
FAST_SPEED_MBPS = 10.0
MEDIUM_SPEED_MBPS = 3.0
