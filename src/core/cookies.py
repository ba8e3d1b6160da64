"""Cookie adapter used by the session client to persist auth state."""
import re
from dataclasses import dataclass, field
from typing import Any

from starlette.requests import Request
from starlette.responses import Response

# Largest value written to a single cookie; browsers cap name + value + attributes at 4096
MAX_CHUNK_SIZE = 3180


@dataclass
class _CookieWrite:
    value: str | None  # None means delete
    options: dict[str, Any] = field(default_factory=dict)


class CookieStore:
    """
    Request-scoped view of the browser's cookies.

    Reads come from the incoming request, overlaid with any writes made during the
    request, so a session stored by a code exchange is visible to later calls in the
    same request. Writes are queued and copied onto the outgoing response by `apply`.
    """

    def __init__(
        self,
        cookies: dict[str, str] | None = None,
        *,
        secure: bool = False,
        max_age: int = 60 * 60 * 24 * 400,
    ) -> None:
        self._cookies = dict(cookies or {})
        self._writes: dict[str, _CookieWrite] = {}
        self._defaults: dict[str, Any] = {
            "path": "/",
            "httponly": True,
            "samesite": "lax",
            "secure": secure,
            "max_age": max_age,
        }

    @classmethod
    def from_request(cls, request: Request, *, secure: bool = False) -> "CookieStore":
        """Build a store from the cookies on an incoming request."""
        return cls(dict(request.cookies), secure=secure)

    def get(self, name: str) -> str | None:
        """Return the current value of a cookie, honoring pending writes."""
        if name in self._writes:
            return self._writes[name].value
        return self._cookies.get(name)

    def set(self, name: str, value: str, **options: Any) -> None:
        """Queue a cookie write."""
        self._writes[name] = _CookieWrite(value, {**self._defaults, **options})

    def remove(self, name: str, **options: Any) -> None:
        """Queue a cookie deletion."""
        self._writes[name] = _CookieWrite(None, {**self._defaults, **options})

    def _names(self) -> "set[str]":
        names = set(self._cookies) | set(self._writes)
        return {name for name in names if self.get(name) is not None}

    def _chunk_names(self, name: str, start: int = 0) -> list[str]:
        pattern = re.compile(rf"{re.escape(name)}\.(\d+)")
        found = []
        for candidate in self._names():
            match = pattern.fullmatch(candidate)
            if match and int(match.group(1)) >= start:
                found.append(candidate)
        return found

    def get_chunked(self, name: str) -> str | None:
        """
        Return a value that may have been split across `name.0`, `name.1`, ...

        A plain `name` cookie wins over chunks.
        """
        value = self.get(name)
        if value is not None:
            return value
        chunks = []
        while (chunk := self.get(f"{name}.{len(chunks)}")) is not None:
            chunks.append(chunk)
        return "".join(chunks) if chunks else None

    def set_chunked(self, name: str, value: str, **options: Any) -> None:
        """Queue a write, splitting values over MAX_CHUNK_SIZE into numbered cookies."""
        if len(value) <= MAX_CHUNK_SIZE:
            self.set(name, value, **options)
            for stale in self._chunk_names(name):
                self.remove(stale)
            return

        chunks = [value[i:i + MAX_CHUNK_SIZE] for i in range(0, len(value), MAX_CHUNK_SIZE)]
        if self.get(name) is not None:
            self.remove(name)
        for index, chunk in enumerate(chunks):
            self.set(f"{name}.{index}", chunk, **options)
        for stale in self._chunk_names(name, start=len(chunks)):
            self.remove(stale)

    def remove_chunked(self, name: str) -> None:
        """Queue deletion of `name` and any of its chunks."""
        for chunk in self._chunk_names(name):
            self.remove(chunk)
        self.remove(name)

    @property
    def has_pending_writes(self) -> bool:
        """True if any cookie was set or removed during this request."""
        return bool(self._writes)

    def apply(self, response: Response) -> Response:
        """Copy queued writes onto the response and return it."""
        for name, write in self._writes.items():
            if write.value is None:
                response.delete_cookie(
                    name,
                    path=write.options["path"],
                    secure=write.options["secure"],
                    httponly=write.options["httponly"],
                    samesite=write.options["samesite"],
                )
            else:
                response.set_cookie(name, write.value, **write.options)
        return response
