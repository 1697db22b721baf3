import logging
import threading

logger = logging.getLogger(__name__)


def run_sweeps(services, idle_seconds: float) -> dict:
    counts = {
        "sessions": services.sessions.sweep_expired(idle_seconds),
        "rate_limits": services.rate_limiter.sweep(),
        "csrf_tokens": services.csrf.sweep(),
    }
    if any(counts.values()):
        logger.info("Swept expired entries: %s", counts)
    return counts


class Sweeper:
    """Daemon thread running run_sweeps every interval seconds."""

    def __init__(self, services, idle_seconds: float, interval: float):
        self.services = services
        self.idle_seconds = idle_seconds
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="security-sweeper", daemon=True)

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                run_sweeps(self.services, self.idle_seconds)
            except Exception:
                logger.exception("Security sweep failed")
