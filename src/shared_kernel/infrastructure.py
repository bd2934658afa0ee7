"""
Инфраструктура общего ядра.

Логирование, шина событий, каталог объектов размещения и хранилища кеша.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from redis.asyncio import Redis as AsyncRedis

from .config import Settings, get_settings
from .domain import DomainEvent, EntityId, Property, RoomType, now
from .interfaces import EventHandler, ILogger

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Настраивает корневой логгер по параметрам приложения."""
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


class StdLogger(ILogger):
    """Логгер поверх стандартного модуля logging с контекстом в виде key=value."""

    def __init__(self, name: str = "hotel", log_format: Optional[str] = None):
        self._logger = logging.getLogger(name)
        self._format = log_format or get_settings().log_format

    def _render(self, message: str, context: Dict[str, Any]) -> str:
        if not context:
            return message
        if self._format == "json":
            return f"{message} {json.dumps(context, default=str, sort_keys=True)}"
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{message} [{pairs}]"

    def debug(self, message: str, /, **kwargs: Any) -> None:
        self._logger.debug(self._render(message, kwargs))

    def info(self, message: str, /, **kwargs: Any) -> None:
        self._logger.info(self._render(message, kwargs))

    def warning(self, message: str, /, **kwargs: Any) -> None:
        self._logger.warning(self._render(message, kwargs))

    def error(self, message: str, /, **kwargs: Any) -> None:
        self._logger.error(self._render(message, kwargs))


class InMemoryEventBus:
    """Реализация шины событий в памяти."""

    def __init__(self, logger: Optional[ILogger] = None):
        self._subscribers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logger or StdLogger("hotel.events")

    async def publish(self, event: DomainEvent) -> None:
        """Публикует событие. Ошибки обработчиков логируются и не пробрасываются."""
        event_type = type(event)
        handlers = self._subscribers.get(event_type, [])
        if not handlers:
            self._logger.debug(f"No subscribers for event type {event_type.__name__}")
            return

        self._logger.info(
            f"Publishing event: {event_type.__name__}", event_id=event.event_id
        )

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                self._logger.error(
                    f"Error in event handler for {event_type.__name__}",
                    error=str(e),
                    event_id=event.event_id,
                )

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        """Подписывает обработчик на события указанного типа."""
        self._subscribers.setdefault(event_type, []).append(handler)
        self._logger.debug(f"Subscribed handler to {event_type.__name__} events")


class InMemoryPropertyCatalog:
    """Каталог объектов размещения в памяти."""

    def __init__(self) -> None:
        self._properties: Dict[EntityId, Property] = {}
        self._room_types: Dict[EntityId, RoomType] = {}

    def add_property(self, property_: Property) -> Property:
        self._properties[property_.id] = property_
        return property_

    def add_room_type(self, room_type: RoomType) -> RoomType:
        self._room_types[room_type.id] = room_type
        return room_type

    async def find_property(self, property_id: EntityId) -> Optional[Property]:
        return self._properties.get(property_id)

    async def find_room_type(self, room_type_id: EntityId) -> Optional[RoomType]:
        return self._room_types.get(room_type_id)


class InMemoryCacheStore:
    """Хранилище кеша в памяти с истечением по часам."""

    def __init__(self, clock: Callable[[], datetime] = now):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, datetime]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheStore:
    """Хранилище кеша в Redis (асинхронный клиент)."""

    def __init__(self, client: Optional[AsyncRedis] = None, url: Optional[str] = None):
        self._url = url or get_settings().redis_url
        self._client = client

    @property
    def client(self) -> AsyncRedis:
        """Ленивая инициализация клиента Redis."""
        if self._client is None:
            self._client = AsyncRedis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        value = await self.client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
