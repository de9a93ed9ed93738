import time
from dataclasses import dataclass, field
from threading import Lock


@dataclass
class _AttemptWindow:
    failures: list[float] = field(default_factory=list)
    locked_until: float = 0.0


class LoginThrottle:
    """In-process failed-login counter keyed by scope, email and client IP."""

    def __init__(self, *, max_attempts: int, window_seconds: int, lock_seconds: int):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self._windows: dict[str, _AttemptWindow] = {}
        self._lock = Lock()

    @staticmethod
    def key_for(scope: str, email: str, client_ip: str) -> str:
        return f"{scope}:{email.strip().lower()}:{client_ip}"

    def retry_after(self, key: str) -> int:
        """Seconds until the key may try again; 0 when not locked."""
        now = time.time()
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.locked_until <= now:
                return 0
            return int(window.locked_until - now) + 1

    def record_failure(self, key: str) -> None:
        now = time.time()
        cutoff = now - self.window_seconds
        with self._lock:
            window = self._windows.setdefault(key, _AttemptWindow())
            window.failures = [ts for ts in window.failures if ts >= cutoff]
            window.failures.append(now)
            if len(window.failures) >= self.max_attempts:
                window.locked_until = now + self.lock_seconds

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
