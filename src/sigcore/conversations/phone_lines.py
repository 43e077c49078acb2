"""
Phone line ID to phone number resolution.

Some providers (OpenPhone) identify our side of a thread by an opaque line ID
(``PN...``). Conversations store the real number, so the ID is resolved through
the provider's phone-number listing and cached in memory per process.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

from sigcore.providers.interface import PhoneLine, ProviderError
from sigcore.shared.logging import get_logger
from sigcore.shared.phone import looks_like_phone_line_id, normalize_phone_number

logger = get_logger(__name__)

PhoneLineLoader = Callable[[], Awaitable[list[PhoneLine]]]


@dataclass(frozen=True)
class ResolvedLine:
    """Number and display name of a phone line; ``number`` may be empty."""

    number: str
    name: str | None = None


UNRESOLVED = ResolvedLine(number="", name=None)


class PhoneLineResolver:
    """Cache of ``"{workspace_id}:{phone_line_id}"`` -> ``ResolvedLine``.

    Shared across requests. Only successful resolutions are cached so a line
    added later is picked up on the next event.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self._cache: dict[str, ResolvedLine] = {}
        self._max_entries = max_entries

    @staticmethod
    def _key(workspace_id: UUID, phone_line_id: str) -> str:
        return f"{workspace_id}:{phone_line_id}"

    def get_cached(self, workspace_id: UUID, phone_line_id: str) -> ResolvedLine | None:
        return self._cache.get(self._key(workspace_id, phone_line_id))

    def _store(self, workspace_id: UUID, line: PhoneLine) -> None:
        number = normalize_phone_number(line.number)
        # Never cache a line ID posing as a number
        if not number or looks_like_phone_line_id(line.number):
            return
        if len(self._cache) >= self._max_entries:
            self._cache.pop(next(iter(self._cache)))
        self._cache[self._key(workspace_id, line.id)] = ResolvedLine(number=number, name=line.name)

    async def resolve(
        self,
        workspace_id: UUID,
        phone_line_id: str | None,
        loader: PhoneLineLoader,
    ) -> ResolvedLine:
        """Resolve a line ID to its number.

        Args:
            workspace_id: Owning workspace (part of the cache key).
            phone_line_id: Provider line identifier.
            loader: Lists the workspace's phone lines from the provider.

        Returns:
            The resolved line, or ``UNRESOLVED`` (empty number) when the
            provider call fails or the line is unknown.
        """
        if not phone_line_id:
            return UNRESOLVED

        cached = self.get_cached(workspace_id, phone_line_id)
        if cached is not None:
            return cached

        try:
            lines = await loader()
        except ProviderError as e:
            logger.warning(
                "Failed to resolve phone line",
                extra={
                    "workspace_id": str(workspace_id),
                    "phone_line_id": phone_line_id,
                    "error": str(e),
                    "error_code": e.error_code,
                },
            )
            return UNRESOLVED

        for line in lines:
            self._store(workspace_id, line)

        resolved = self.get_cached(workspace_id, phone_line_id)
        if resolved is None:
            logger.warning(
                "Phone line not found in provider account",
                extra={"workspace_id": str(workspace_id), "phone_line_id": phone_line_id},
            )
            return UNRESOLVED
        return resolved

    def invalidate(self, workspace_id: UUID) -> None:
        prefix = f"{workspace_id}:"
        for key in [k for k in self._cache if k.startswith(prefix)]:
            del self._cache[key]

    def __len__(self) -> int:
        return len(self._cache)


@lru_cache(maxsize=1)
def get_phone_line_resolver() -> PhoneLineResolver:
    """Process-wide resolver."""
    return PhoneLineResolver()
