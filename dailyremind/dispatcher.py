"""
dispatcher.py
─────────────
Notification dispatchers: the external capability that delivers a one-shot
alert at an absolute time and calls back when it fired or the user acted.

  - Dispatcher       interface the scheduler talks to
  - LocalDispatcher  one daemon "notification-ticker" thread that wakes every
                     tick, fires due requests and raises an OS desktop
                     notification through a subprocess (notify-send,
                     osascript or PowerShell)

Request ids are opaque strings chosen by the caller.  Payloads are plain
dicts carrying at least ``reminderId`` and ``executionId``.
"""

import platform
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from dailyremind.logger import logger

FireCallback = Callable[[dict], object]
ActionCallback = Callable[[dict, str, Optional[int]], object]


class Dispatcher(ABC):

    def __init__(self):
        self._on_fire: Optional[FireCallback] = None
        self._on_action: Optional[ActionCallback] = None

    def set_callbacks(self, on_fire: FireCallback, on_action: ActionCallback) -> None:
        self._on_fire = on_fire
        self._on_action = on_action

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    @abstractmethod
    def request_permission(self) -> bool:
        pass

    @abstractmethod
    def schedule(self, request_id: str, fire_at: datetime, payload: dict) -> bool:
        """Return False when the request cannot be accepted (capacity)."""

    @abstractmethod
    def cancel(self, request_id: str) -> None:
        pass

    @abstractmethod
    def list_pending(self) -> List[str]:
        pass


@dataclass
class _Request:
    request_id: str
    fire_at: datetime
    payload: dict


class LocalDispatcher(Dispatcher):
    """
    In-process dispatcher backed by a tick thread.

    OS analogy: the tick loop is the timer interrupt; each due request is
    handed to the callback on the ticker thread.
    """

    _DELIVERED_HISTORY = 64

    def __init__(
        self,
        max_pending: int = 64,
        tick_seconds: float = 1.0,
        desktop_notifications: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__()
        self._max_pending = max_pending
        self._tick_seconds = tick_seconds
        self._desktop = desktop_notifications
        self._clock = clock
        self._pending: Dict[str, _Request] = {}
        self._delivered: "OrderedDict[str, dict]" = OrderedDict()
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._tick_thread and self._tick_thread.is_alive():
            return
        self._stopped.clear()
        self._tick_thread = threading.Thread(
            target=self._tick_loop,
            daemon=True,
            name="notification-ticker",
        )
        self._tick_thread.start()
        logger.info(f"Local dispatcher started (capacity {self._max_pending}, tick {self._tick_seconds}s)")

    def stop(self) -> None:
        self._stopped.set()
        if self._tick_thread and self._tick_thread is not threading.current_thread():
            self._tick_thread.join(timeout=self._tick_seconds * 2)

    # ── Dispatcher API ────────────────────────────────────────────────────────

    def request_permission(self) -> bool:
        # Local delivery needs no grant; desktop popups are best effort
        return True

    def schedule(self, request_id: str, fire_at: datetime, payload: dict) -> bool:
        with self._lock:
            if request_id not in self._pending and len(self._pending) >= self._max_pending:
                logger.warning(f"Dispatcher full ({self._max_pending}); refusing {request_id}")
                return False
            self._pending[request_id] = _Request(request_id, fire_at, dict(payload))
        return True

    def cancel(self, request_id: str) -> None:
        with self._lock:
            self._pending.pop(request_id, None)

    def list_pending(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def action(self, request_id: str, response: str, snooze_minutes: Optional[int] = None) -> bool:
        """Report a user action on an already-delivered notification."""
        with self._lock:
            payload = self._delivered.pop(request_id, None)
        if payload is None or self._on_action is None:
            return False
        self._invoke(self._on_action, payload, response, snooze_minutes)
        return True

    # ── Internal ──────────────────────────────────────────────────────────────

    def _tick_loop(self):
        while not self._stopped.is_set():
            self.fire_due(self._clock())
            # Sleep one tick or until stopped
            self._stopped.wait(timeout=self._tick_seconds)

    def fire_due(self, now: datetime) -> int:
        with self._lock:
            due = [r for r in self._pending.values() if r.fire_at <= now]
            for request in due:
                del self._pending[request.request_id]
                self._delivered[request.request_id] = request.payload
            while len(self._delivered) > self._DELIVERED_HISTORY:
                self._delivered.popitem(last=False)

        for request in sorted(due, key=lambda r: r.fire_at):
            if self._desktop:
                self._send_os_notification(
                    title=request.payload.get("title", "Reminder"),
                    body=request.payload.get("body", ""),
                    sound=request.payload.get("sound", True) and not request.payload.get("silent", False),
                )
            if self._on_fire:
                self._invoke(self._on_fire, request.payload)
        return len(due)

    @staticmethod
    def _invoke(callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Dispatcher callback {getattr(callback, '__name__', callback)} failed")

    @staticmethod
    def _send_os_notification(title: str, body: str, sound: bool = True):
        """
        Cross-platform OS desktop notification via subprocess.

        Linux  → notify-send (libnotify / D-Bus IPC)
        macOS  → osascript (AppleScript bridge), text passed as argv
        Windows→ PowerShell NotifyIcon balloon, text in single-quoted literals
        """
        system = platform.system()
        try:
            if system == "Linux":
                subprocess.Popen(
                    ["notify-send", "--icon=dialog-information",
                     "--expire-time=8000", title, body],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL
                )
            elif system == "Darwin":
                script = "display notification (item 2 of argv) with title (item 1 of argv)"
                if sound:
                    script += ' sound name "Glass"'
                subprocess.Popen(
                    ["osascript", "-e", "on run argv", "-e", script, "-e", "end run", title, body],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL
                )
            elif system == "Windows":
                ps_cmd = (
                    "Add-Type -AssemblyName System.Windows.Forms; "
                    "$n = New-Object System.Windows.Forms.NotifyIcon; "
                    "$n.Icon = [System.Drawing.SystemIcons]::Information; "
                    "$n.Visible = $true; "
                    f"$n.ShowBalloonTip(5000, {_ps_literal(title)}, {_ps_literal(body)}, "
                    "[System.Windows.Forms.ToolTipIcon]::Info)"
                )
                subprocess.Popen(
                    ["powershell", "-WindowStyle", "Hidden", "-Command", ps_cmd],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL
                )
        except OSError as e:
            # notify-send / osascript missing: the callback still runs
            logger.debug(f"Desktop notification unavailable on {system}: {e}")


def _ps_literal(text: str) -> str:
    # Single-quoted PowerShell strings expand nothing; a quote is doubled
    return "'" + text.replace("'", "''") + "'"
