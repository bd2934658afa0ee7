"""
Интерфейсы (порты), общие для всех ограниченных контекстов.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Type

from .domain import DomainEvent, EntityId, Property, RoomType

EventHandler = Callable[[Any], Awaitable[None]]


class ILogger(Protocol):
    """Интерфейс логгера."""

    def debug(self, message: str, /, **kwargs: Any) -> None: ...
    def info(self, message: str, /, **kwargs: Any) -> None: ...
    def warning(self, message: str, /, **kwargs: Any) -> None: ...
    def error(self, message: str, /, **kwargs: Any) -> None: ...


class ICacheStore(Protocol):
    """Интерфейс хранилища ключ-значение с TTL."""

    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...
    async def delete(self, key: str) -> None: ...


class IPropertyCatalog(Protocol):
    """Интерфейс каталога объектов размещения и типов номеров."""

    async def find_property(self, property_id: EntityId) -> Optional[Property]: ...
    async def find_room_type(self, room_type_id: EntityId) -> Optional[RoomType]: ...


class IEventBus(Protocol):
    """Интерфейс шины доменных событий."""

    async def publish(self, event: DomainEvent) -> None: ...
    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None: ...
