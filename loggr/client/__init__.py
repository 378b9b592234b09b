from .capture import ErrorReporter, LoginTimeoutWatcher
from .queue import ErrorQueue
from .rate_limiter import RateLimiter
from .transport import Transport, fetch_client_config
