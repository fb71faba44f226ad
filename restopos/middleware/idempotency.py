import asyncio
import json
import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("restopos.idempotency")

# Rutas con replay por Idempotency-Key y la clave de éxito esperada en el JSON
ALLOW = [
    (re.compile(r"^/sessions/\d+/orders$"), "order_id"),
    (re.compile(r"^/takeaway/orders$"), "order_id"),
]
TTL_SECONDS = 3600


def _success_key(path: str):
    for pattern, key in ALLOW:
        if pattern.match(path):
            return key
    return None


class _Cache:
    def __init__(self, ttl=TTL_SECONDS, max_entries=2048):
        self.ttl = ttl
        self.max_entries = max_entries
        self._store = {}
        self._lock = asyncio.Lock()

    async def get(self, key):
        async with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            if item["exp"] < time.time():
                self._store.pop(key, None)
                return None
            return item

    async def set(self, key, val):
        async with self._lock:
            if len(self._store) >= self.max_entries:
                self._store.pop(next(iter(self._store)))
            self._store[key] = val

    async def clear(self):
        async with self._lock:
            self._store.clear()


class _KeyedLocks:
    """Un lock por Idempotency-Key; se descarta cuando nadie lo tiene ni lo espera."""

    def __init__(self):
        self._locks = {}
        self._refs = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key):
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._refs[key] = self._refs.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            await self._forget(key)
            raise
        return lock

    async def _forget(self, key):
        async with self._guard:
            left = self._refs.get(key, 1) - 1
            if left <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._refs[key] = left

    async def release(self, key):
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()
        await self._forget(key)


def _drop_content_length(headers: dict) -> dict:
    return {k: v for k, v in headers.items() if k.lower() != "content-length"}


def _replay(cached) -> Response:
    body_bytes = cached["body"]
    try:
        js = json.loads(body_bytes.decode("utf-8"))
    except ValueError:
        js = None
    if isinstance(js, dict):
        js.setdefault("replay", True)
        body_bytes = json.dumps(js).encode("utf-8")
    headers = _drop_content_length(dict(cached["headers"]))
    headers["Idempotent-Replay"] = "true"
    return Response(
        content=body_bytes,
        status_code=cached["status"],
        media_type=cached["media_type"],
        headers=headers,
    )


idem_cache = _Cache()
_keyed_locks = _KeyedLocks()


class OrderIdempotency(BaseHTTPMiddleware):
    """Repite la respuesta de una orden ya creada con el mismo Idempotency-Key."""

    async def dispatch(self, request, call_next):
        if request.method != "POST":
            return await call_next(request)

        path = request.url.path
        success_key = _success_key(path)
        if not success_key:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key:
            return await call_next(request)

        cache_key = f"{request.method}:{path}:{idem_key}"

        cached = await idem_cache.get(cache_key)
        if cached:
            logger.info("idempotent replay for %s", cache_key)
            return _replay(cached)

        await _keyed_locks.acquire(cache_key)
        try:
            cached = await idem_cache.get(cache_key)
            if cached:
                logger.info("idempotent replay for %s", cache_key)
                return _replay(cached)

            response = await call_next(request)
            body_bytes = b""
            async for chunk in response.body_iterator:
                body_bytes += chunk

            new_resp = Response(
                content=body_bytes,
                status_code=response.status_code,
                media_type=response.media_type,
                headers=_drop_content_length(dict(response.headers)),
            )

            # sólo se cachea un 200 con la clave de éxito
            should_cache = response.status_code == 200
            if should_cache:
                try:
                    js = json.loads(body_bytes.decode("utf-8"))
                except ValueError:
                    js = None
                should_cache = isinstance(js, dict) and success_key in js

            if should_cache:
                await idem_cache.set(
                    cache_key,
                    {
                        "status": new_resp.status_code,
                        "headers": dict(new_resp.headers),
                        "media_type": new_resp.media_type,
                        "body": body_bytes,
                        "exp": time.time() + idem_cache.ttl,
                    },
                )
            return new_resp
        finally:
            await _keyed_locks.release(cache_key)


def install_idempotency(app):
    app.add_middleware(OrderIdempotency)
