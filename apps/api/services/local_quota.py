"""
Client-side quota mirror and auth-attempt throttle.

Nothing here is authoritative. The cache only drives optimistic UI; the server's
counts overwrite it whenever a response carries them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Union
import json
import logging
import threading

from config import settings
from services.clock import as_utc, next_reference_midnight, reference_date, utc_now

logger = logging.getLogger(__name__)

USAGE_KEY = "wedai_usage"
AUTH_KEY_PREFIX = "wedai_auth"

ACTION_LOGIN = "login_attempt"
ACTION_SIGNUP = "signup_attempt"
ACTION_PASSWORD_RESET = "password_reset"
DEFAULT_ATTEMPT_CEILING = 5


class QuotaStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> Iterable[str]:
        ...


class MemoryQuotaStore:
    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> Iterable[str]:
        return list(self._items.keys())


class JsonFileQuotaStore:
    """Key/value strings persisted to a single JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Quota store %s is unreadable, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def keys(self) -> Iterable[str]:
        with self._lock:
            return list(self._read().keys())


@dataclass(frozen=True)
class LocalQuotaStatus:
    can_proceed: bool
    remaining: int
    total: int
    resets_at: datetime
    is_at_limit: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "can_proceed": self.can_proceed,
            "remaining": self.remaining,
            "total": self.total,
            "resets_at": self.resets_at.isoformat(),
            "is_at_limit": self.is_at_limit,
        }


class LocalQuotaCache:
    """Mirror of the free-tier daily counter, stored as ``{date, used}``."""

    def __init__(
        self,
        store: Optional[QuotaStore] = None,
        daily_limit: Optional[int] = None,
        key: str = USAGE_KEY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store if store is not None else MemoryQuotaStore()
        self.daily_limit = int(daily_limit if daily_limit is not None else settings.FREE_DAILY_CREDITS)
        self.key = key
        self.clock = clock

    def _today(self) -> date:
        return reference_date(self.clock())

    def _fresh(self) -> Dict[str, Any]:
        record = {"date": self._today().isoformat(), "used": 0}
        self._save(record)
        return record

    def _save(self, record: Dict[str, Any]) -> None:
        self.store.set(self.key, json.dumps(record))

    def _load(self) -> Dict[str, Any]:
        raw = self.store.get(self.key)
        if raw is None:
            return self._fresh()
        try:
            record = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt local usage record")
            return self._fresh()
        if not isinstance(record, dict):
            return self._fresh()
        used = record.get("used")
        if not isinstance(used, int) or isinstance(used, bool) or not record.get("date"):
            return self._fresh()
        if record["date"] != self._today().isoformat():
            return self._fresh()
        if used < 0 or used > self.daily_limit:
            logger.warning("Local usage %s outside 0..%s, resetting", used, self.daily_limit)
            return self._fresh()
        return record

    def _status(self, used: int) -> LocalQuotaStatus:
        remaining = max(0, self.daily_limit - used)
        return LocalQuotaStatus(
            can_proceed=remaining > 0,
            remaining=remaining,
            total=self.daily_limit,
            resets_at=next_reference_midnight(self.clock()),
            is_at_limit=remaining == 0,
        )

    def check(self) -> LocalQuotaStatus:
        return self._status(int(self._load()["used"]))

    def record_use(self) -> LocalQuotaStatus:
        record = self._load()
        if record["used"] < self.daily_limit:
            record["used"] += 1
            self._save(record)
        return self._status(int(record["used"]))

    def reset(self) -> LocalQuotaStatus:
        return self._status(int(self._fresh()["used"]))

    def sync_from_server(
        self,
        used_today: int,
        daily_limit: Optional[int] = None,
        server_date: Optional[Union[str, date]] = None,
    ) -> LocalQuotaStatus:
        """Overwrite local state with the server's view."""
        if daily_limit is not None:
            self.daily_limit = max(int(daily_limit), 0)
        used = min(max(int(used_today), 0), self.daily_limit)
        if isinstance(server_date, date):
            day = server_date.isoformat()
        else:
            day = server_date or self._today().isoformat()
        self._save({"date": day, "used": used})
        return self.check()


@dataclass(frozen=True)
class WithinWindow:
    attempts: int
    window_start: datetime
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class Expired:
    pass


AttemptWindow = Union[WithinWindow, Expired]


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(str(value)))


class AuthAttemptThrottle:
    """Per ``(identifier, action)`` attempt ceilings with a temporary lockout."""

    def __init__(
        self,
        store: Optional[QuotaStore] = None,
        ceilings: Optional[Dict[str, int]] = None,
        window: Optional[timedelta] = None,
        lockout: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store if store is not None else MemoryQuotaStore()
        self.ceilings = ceilings or {
            ACTION_LOGIN: settings.AUTH_LOGIN_ATTEMPTS,
            ACTION_SIGNUP: settings.AUTH_SIGNUP_ATTEMPTS,
            ACTION_PASSWORD_RESET: settings.AUTH_PASSWORD_RESET_ATTEMPTS,
        }
        self.window = window or timedelta(minutes=settings.AUTH_WINDOW_MINUTES)
        self.lockout = lockout or timedelta(minutes=settings.AUTH_LOCKOUT_MINUTES)
        self.clock = clock

    def ceiling(self, action: str) -> int:
        return int(self.ceilings.get(action, DEFAULT_ATTEMPT_CEILING))

    @staticmethod
    def _key(identifier: str, action: str) -> str:
        return f"{AUTH_KEY_PREFIX}_{action}_{identifier}"

    def window_state(self, identifier: str, action: str) -> AttemptWindow:
        """Evaluate the stored window against the current time."""
        raw = self.store.get(self._key(identifier, action))
        if raw is None:
            return Expired()
        try:
            data = json.loads(raw)
            state = WithinWindow(
                attempts=int(data["attempts"]),
                window_start=_parse_time(data["window_start"]),
                blocked_until=_parse_time(data.get("blocked_until")),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding corrupt auth attempt record for %s", action)
            return Expired()
        if state.window_start is None:
            return Expired()

        now = self.clock()
        blocked = state.blocked_until is not None and now < state.blocked_until
        if now - state.window_start > self.window and not blocked:
            return Expired()
        return state

    def _save(self, identifier: str, action: str, state: WithinWindow) -> None:
        payload = {
            "attempts": state.attempts,
            "window_start": state.window_start.isoformat(),
            "blocked_until": state.blocked_until.isoformat() if state.blocked_until else None,
        }
        self.store.set(self._key(identifier, action), json.dumps(payload))

    def is_blocked(self, identifier: str, action: str) -> bool:
        state = self.window_state(identifier, action)
        if isinstance(state, Expired) or state.blocked_until is None:
            return False
        return self.clock() < state.blocked_until

    def can_attempt(self, identifier: str, action: str) -> bool:
        state = self.window_state(identifier, action)
        if isinstance(state, Expired):
            return True
        if self.is_blocked(identifier, action):
            return False
        return state.attempts < self.ceiling(action)

    def record_attempt(self, identifier: str, action: str, failed: bool = False) -> None:
        if not failed:
            self.clear(identifier, action)
            return

        now = self.clock()
        state = self.window_state(identifier, action)
        if isinstance(state, Expired):
            state = WithinWindow(attempts=1, window_start=now)
        else:
            state = WithinWindow(
                attempts=state.attempts + 1,
                window_start=state.window_start,
                blocked_until=state.blocked_until,
            )
        if state.attempts >= self.ceiling(action):
            state = WithinWindow(
                attempts=state.attempts,
                window_start=state.window_start,
                blocked_until=now + self.lockout,
            )
            logger.info("Locking %s for %s after %s failed attempts", action, self.lockout, state.attempts)
        self._save(identifier, action, state)

    def clear(self, identifier: str, action: str) -> None:
        self.store.delete(self._key(identifier, action))

    def seconds_until_unblocked(self, identifier: str, action: str) -> float:
        state = self.window_state(identifier, action)
        if isinstance(state, Expired) or state.blocked_until is None:
            return 0.0
        return max(0.0, (state.blocked_until - self.clock()).total_seconds())

    def remaining_attempts(self, identifier: str, action: str) -> int:
        state = self.window_state(identifier, action)
        if isinstance(state, Expired):
            return self.ceiling(action)
        return max(0, self.ceiling(action) - state.attempts)
