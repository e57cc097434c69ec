from __future__ import annotations

import threading

from genmeter.services.usage_manager import UsageManager

_manager: UsageManager | None = None
_manager_lock = threading.Lock()


def get_usage_manager() -> UsageManager:
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                _manager = UsageManager()
    return _manager


def reset_usage_manager() -> None:
    global _manager
    with _manager_lock:
        _manager = None
