"""Provider adapter contract.

An adapter is the only component that speaks a provider's protocol.  The
orchestrator drives it one page at a time:

* ``cursor`` set, ``page_token`` unset: first page of an incremental sync.
* ``cursor`` set, ``page_token`` set: later page of the same incremental sync.
* ``cursor`` unset: full sync, first page when ``page_token`` is unset.

The page carrying no ``next_page_token`` is terminal; its ``next_cursor``
(when present) becomes the resource's new cursor once the run succeeds.

Adapters must raise :class:`~courier.sync.errors.CursorInvalidError` when the
provider rejects a cursor, and
:class:`~courier.sync.errors.ProviderRequestError` for every other failure.
"""

from __future__ import annotations

import abc

from courier.sync.models import ChangePage


class ProviderAdapter(abc.ABC):
    """Provider contract for incremental change listing."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable provider name, matching the credential record's provider."""
        ...

    @abc.abstractmethod
    async def list_changes(
        self,
        access_token: str,
        *,
        resource_id: str,
        cursor: str | None = None,
        page_token: str | None = None,
    ) -> ChangePage:
        """Fetch one page of changes."""
        ...

    async def shutdown(self) -> None:
        """Release adapter resources."""
        return None
