"""Global constants for titan."""

# Project layout

PROJECT_CONFIG_FILE = "titan.json"
DEFAULT_SERVER_DIR = "server"

# Watching

DEFAULT_DEBOUNCE_MS = 500
DEFAULT_WATCH_PATTERNS = ("app/*", ".env", ".env.*")
DEFAULT_IGNORE_PATTERNS = ("*.d.ts", "*/node_modules/*")
DEFAULT_IGNORE_DIRS = ("target", "dist")
DEFAULT_ENV_PATTERNS = (".env", ".env.*")

# Build pipeline

DEFAULT_BUILD_TIMEOUT = 300.0
BUILD_OUTPUT_TAIL_LINES = 40

# titan/bundle.js only exports bundle(); the step imports it and awaits the call.
BUNDLE_ACTIONS_SCRIPT = "import { bundle } from './titan/bundle.js'; await bundle();"

# Production server

DEFAULT_RELEASE_BINARY = "target/release/titan-server"

# Server process lifecycle (seconds)

DEFAULT_READY_DELAY = 1.0
DEFAULT_SETTLE_DELAY = 0.5
DEFAULT_FAST_CRASH_THRESHOLD = 10.0
DEFAULT_SIGINT_TIMEOUT = 2.0
DEFAULT_SIGTERM_TIMEOUT = 2.0
DEFAULT_SIGKILL_TIMEOUT = 1.0

# Retry configuration

DEFAULT_MAX_CRASH_RETRIES = 3
DEFAULT_RETRY_BACKOFF_INITIAL = 1.0
DEFAULT_RETRY_BACKOFF_MAX = 8.0

# Orchestrator

CYCLE_HISTORY_SIZE = 50
