# clinic_core/common/events.py
from collections import defaultdict
from typing import Callable, Dict, List, Any

Handler = Callable[[Dict[str, Any]], None]

_registry: Dict[str, List[Handler]] = defaultdict(list)


def subscribe(event_name: str):
    """
    Decorator to register an event handler.
    Usage:
        @subscribe("visit.stage_entered")
        def handler(payload): ...
    """
    def _decorator(fn: Handler) -> Handler:
        if fn not in _registry[event_name]:
            _registry[event_name].append(fn)
        return fn
    return _decorator


def publish(event_name: str, payload: Dict[str, Any]) -> None:
    """
    Publish an event to in-process subscribers.
    Handlers run synchronously inside the caller's transaction, so a failing
    handler rolls the publishing write back with it.
    Keep payloads ID-based to avoid cross-app imports.
    """
    for handler in list(_registry.get(event_name, [])):
        handler(payload)


def subscribers(event_name: str) -> List[Handler]:
    return list(_registry.get(event_name, []))
