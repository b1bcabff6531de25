"""Base class for b2cli services."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from b2cli.transport.http import AsyncTransport


class BaseService:
    """Service bound to a shared transport."""

    def __init__(self, transport: AsyncTransport) -> None:
        self._transport = transport

    @property
    def transport(self) -> AsyncTransport:
        return self._transport
