"""
Конфигурация системы расчета цен и бронирования.

Настройки читаются из переменных окружения с префиксом HOTEL_ (и файла .env).
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Настройки приложения."""

    model_config = SettingsConfigDict(
        env_prefix="HOTEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ======================================================================
    # Расчет цен
    # ======================================================================
    default_currency: str = Field(
        default="USD", description="Валюта по умолчанию для тарифов без валюты"
    )
    price_cache_ttl_seconds: int = Field(
        default=1800, ge=1, description="Время жизни закешированного расчета цены"
    )
    price_cache_prefix: str = Field(
        default="price_calc:", description="Префикс ключей кеша расчетов"
    )
    quote_validity_hours: int = Field(
        default=24, ge=1, description="Срок действия ценового предложения"
    )

    # ======================================================================
    # Redis
    # ======================================================================
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Адрес Redis для кеша цен"
    )

    # ======================================================================
    # Бронирование
    # ======================================================================
    max_advance_booking_days: int = Field(
        default=730, description="Максимальная глубина бронирования в днях"
    )
    advance_booking_warning_days: int = Field(
        default=365, description="Порог предупреждения о далеком заезде"
    )
    pending_booking_ttl_minutes: int = Field(
        default=30, description="Время жизни неподтвержденного бронирования"
    )
    modification_cutoff_hours: int = Field(
        default=24, description="За сколько часов до заезда запрещено менять даты"
    )
    modification_fee: Decimal = Field(
        default=Decimal("0"), ge=0, description="Сбор за изменение дат"
    )

    # ======================================================================
    # Депозиты
    # ======================================================================
    deposit_minimum_amount: Decimal = Field(
        default=Decimal("50"), ge=0, description="Минимальная сумма депозита"
    )
    deposit_maximum_amount: Decimal = Field(
        default=Decimal("10000"), ge=0, description="Максимальная сумма депозита"
    )
    deposit_default_percentage: Decimal = Field(
        default=Decimal("30"), ge=0, le=100, description="Процент депозита по умолчанию"
    )
    deposit_due_days_before_check_in: int = Field(
        default=7, ge=0, description="За сколько дней до заезда вносится депозит"
    )

    # ======================================================================
    # Политика отмены по умолчанию
    # ======================================================================
    default_refund_percentage: Decimal = Field(
        default=Decimal("100"), ge=0, le=100, description="Процент возврата"
    )
    default_cancellation_hours: int = Field(
        default=24, ge=0, description="Окно бесплатной отмены в часах"
    )
    default_penalty_percentage: Decimal = Field(
        default=Decimal("0"), ge=0, le=100, description="Штраф за позднюю отмену, %"
    )

    # ======================================================================
    # Логирование
    # ======================================================================
    log_level: str = Field(default="INFO", description="Уровень логирования")
    log_format: Literal["text", "json"] = Field(
        default="text", description="Формат вывода контекста в логах"
    )


@lru_cache
def get_settings() -> Settings:
    """Возвращает закешированный экземпляр настроек."""
    return Settings()
