"""
Composition Cache — caches derived checklist views.

Composed sections and level achievement are pure functions of
(template version, scope answers, responses, target level).  Entries are
keyed by exactly that tuple under a per-checklist prefix, and every response
or scope-answer write drops the whole prefix.

Uses Redis when REDIS_URL is set, an in-process store otherwise.
"""

import hashlib
import json
import logging
import os
import time

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "checklist:"


class _MemoryBackend:
    """In-process stand-in for the few Redis calls this module makes."""

    def __init__(self):
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.time() > expires_at:
            del self._entries[key]
            return None
        return value

    def setex(self, key, ttl_seconds, value):
        self._entries[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for key in keys:
            self._entries.pop(key, None)

    def scan_iter(self, match):
        # only "<prefix>*" patterns are issued
        prefix = match.rstrip("*")
        return [key for key in self._entries if key.startswith(prefix)]

    def ping(self):
        return True


_backend = None


def _get_backend():
    """Lazy-initialise Redis or fall back to the in-process store."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            _backend = _redis.from_url(redis_url, decode_responses=True)
            _backend.ping()
            logger.info("Composition cache: using Redis at %s", redis_url.split("@")[-1])
        except Exception as exc:
            logger.warning("Redis unavailable (%s), composition cache stays in-process", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


DEFAULT_TTL = int(os.getenv("COMPOSITION_CACHE_TTL", "300"))


# ── Key builders ─────────────────────────────────────────────────────────

def _digest(payload) -> str:
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def scope_answers_hash(scope_answers: dict) -> str:
    return _digest({k: v for k, v in (scope_answers or {}).items()})


def responses_hash(responses) -> str:
    """Hash of everything about the responses that can change a derived view."""
    return _digest(sorted(
        [r.item_id, r.field_id, r.status, r.answer or ""] for r in responses
    ))


def _prefix(checklist_id: str) -> str:
    return f"{KEY_NAMESPACE}{checklist_id}:"


def cache_key(kind: str, checklist_id: str, template_version: int, scope_answers: dict,
              responses, target_level_id: str | None) -> str:
    return (
        f"{_prefix(checklist_id)}{kind}:v{template_version}:"
        f"{scope_answers_hash(scope_answers)}:{responses_hash(responses)}:"
        f"{target_level_id or '-'}"
    )


# ── Public API ───────────────────────────────────────────────────────────

def get_or_compute(key: str, loader, ttl: int | None = None):
    """Cache-aside.  ``loader`` must return a JSON-serialisable value."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            pass
    value = loader()
    if value is not None:
        be.setex(key, ttl or DEFAULT_TTL, json.dumps(value, default=str))
    return value


def invalidate_checklist(checklist_id: str) -> int:
    """Drop every cached view of a checklist.  Returns the number of keys removed."""
    be = _get_backend()
    keys = list(be.scan_iter(match=f"{_prefix(checklist_id)}*"))
    if keys:
        be.delete(*keys)
    logger.debug(
        "Invalidated %d cached view(s)", len(keys),
        extra={"checklist_id": checklist_id, "event_type": "cache.invalidate"},
    )
    return len(keys)


def clear_all() -> int:
    """Drop every cached checklist view; other keys in a shared Redis are kept."""
    be = _get_backend()
    keys = list(be.scan_iter(match=f"{KEY_NAMESPACE}*"))
    if keys:
        be.delete(*keys)
    return len(keys)


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except Exception as exc:
        return {"status": "error", "error": str(exc)}
